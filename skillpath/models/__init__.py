"""
models/__init__.py - imports all ORM models so Base.metadata sees them
when the schema is created at startup.
"""
from skillpath.models.assessment import AssessmentORM
from skillpath.models.conversation import ConversationORM, MessageORM
from skillpath.models.learning_path import LearningPathORM

__all__ = ["AssessmentORM", "ConversationORM", "LearningPathORM", "MessageORM"]
