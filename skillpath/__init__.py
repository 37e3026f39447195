"""SkillPath - conversational skill assessment and learning-path service."""
