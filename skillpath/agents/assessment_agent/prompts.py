"""
prompts.py - system prompts and repair prompts for skill assessment.

Components:
  SkillCatalogue          - skills bundled in data/ai_skills.json (levels, resources)
  resolve_locale()        - x-locale header -> "ar" | "en"
  build_system_prompt()   - locale-specific instructions + skill context + JSON schema
  build_user_messages()   - the conversation turn sent to the generator
  build_repair_messages() - previous answer + "convert to a single fenced JSON block"

Resource URLs listed in the catalogue for a skill double as the sanitizer
allowlist, so the generator can only link to resources we already vetted.
"""
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from skillpath.agents.assessment_agent.schemas import (
    ALLOWED_MODULE_TYPES,
    MAX_LEVEL,
    MAX_MODULES,
    MIN_LEVEL,
    MIN_MODULES,
)

logger = logging.getLogger(__name__)

Locale = Literal["en", "ar"]

CATALOGUE_PATH = Path(__file__).resolve().parents[2] / "data" / "ai_skills.json"
REPAIR_TAIL_CHARS = 2000


# ---------------------------------------------------------------------------
# Skill catalogue
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SkillResource(_CamelModel):
    url: str


class SkillLevel(_CamelModel):
    level: int
    name_en: str
    name_ar: str
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    questions: List[str] = Field(default_factory=list)
    evaluation: List[str] = Field(default_factory=list)
    progression_steps: List[str] = Field(default_factory=list)
    resources: List[SkillResource] = Field(default_factory=list)


class Skill(_CamelModel):
    id: str
    name_en: str
    name_ar: str
    definition_en: Optional[str] = None
    definition_ar: Optional[str] = None
    levels: List[SkillLevel] = Field(default_factory=list)

    def resource_urls(self) -> list[str]:
        return [r.url for lvl in self.levels for r in lvl.resources]


class SkillCatalogue:
    """Lookup table of skills by id."""

    def __init__(self, skills: List[Skill]) -> None:
        self._by_id = {s.id: s for s in skills}

    def get(self, skill_id: str) -> Optional[Skill]:
        return self._by_id.get(skill_id)

    def __len__(self) -> int:
        return len(self._by_id)

    @classmethod
    def from_file(cls, path: Path) -> "SkillCatalogue":
        raw = json.loads(path.read_text(encoding="utf-8"))
        skills = TypeAdapter(List[Skill]).validate_python(raw)
        logger.info("Loaded skill catalogue path=%s skills=%d", path.name, len(skills))
        return cls(skills)


@lru_cache(maxsize=1)
def default_catalogue() -> SkillCatalogue:
    return SkillCatalogue.from_file(CATALOGUE_PATH)


def resolve_locale(header_value: Optional[str]) -> Locale:
    return "ar" if (header_value or "").strip().lower() == "ar" else "en"


# ---------------------------------------------------------------------------
# Fixed prompt fragments
# ---------------------------------------------------------------------------

_SCHEMA_BLOCK = (
    "{\n"
    "  \"skill\"?: string,\n"
    f"  \"level\": integer ({MIN_LEVEL}-{MAX_LEVEL}),\n"
    "  \"confidence\": number (0-1),\n"
    "  \"reasoning\"?: string,\n"
    "  \"learningModules\": Array<{\n"
    "    \"id\": string, \"title\": string,\n"
    f"    \"type\": {' | '.join(repr(t) for t in ALLOWED_MODULE_TYPES)},\n"
    "    \"duration\": string (e.g. \"15 min\"),\n"
    "    \"description\"?: string, \"objectives\"?: string[2-4], \"outline\"?: string[3-5],\n"
    "    \"resourceUrl\"?: string, \"resourceTitle\"?: string,\n"
    "    \"searchKeywords\"?: string[3-10] (multi-word search phrases)\n"
    f"  }}> with length between {MIN_MODULES} and {MAX_MODULES}\n"
    "}"
)

_INSTRUCTIONS = {
    "en": [
        "You assess the user's skill and propose a learning path.",
        "Respond clearly and concisely.",
        "At the end, output a valid JSON block inside ```json matching this schema only:",
        _SCHEMA_BLOCK,
        "Do not include extra keys. If you used 'modules', rename to 'learningModules'.",
    ],
    "ar": [
        "أنت مساعد يقيم مهارات المستخدم ويقترح مسار تعلم.",
        "اكتب إجابة موجزة وصحيحة.",
        "أخرج في النهاية مقطع JSON صالح وفق المخطط التالي فقط داخل كتلة ```json:",
        _SCHEMA_BLOCK,
        "لا تستخدم مفاتيح إضافية. إذا استخدمت 'modules' حوِّلها إلى 'learningModules'.",
    ],
}

_LABELS = {
    "en": {
        "skill": "Skill being assessed:",
        "levels": "Per-level templates:",
        "questions": "Questions:",
        "evaluation": "Evaluation:",
        "steps": "Progression steps:",
        "resources": "Resources:",
        "url_rule": "Only use resourceUrl values copied from the Resources lines above; otherwise give searchKeywords.",
        "no_url_rule": "Do not invent resourceUrl values; give searchKeywords instead.",
    },
    "ar": {
        "skill": "المهارة قيد التقييم:",
        "levels": "قوالب حسب المستوى:",
        "questions": "أسئلة:",
        "evaluation": "تقييم:",
        "steps": "خطوات التقدم:",
        "resources": "مصادر:",
        "url_rule": "استخدم فقط روابط resourceUrl المذكورة في المصادر أعلاه، وإلا فقدم searchKeywords.",
        "no_url_rule": "لا تخترع روابط resourceUrl؛ قدم searchKeywords بدلاً منها.",
    },
}

_REPAIR_SYSTEM = {
    "en": "Output only valid JSON per the above schema inside a ```json block with no extra text.",
    "ar": "أخرج فقط JSON صالح وفق المخطط المذكور سابقاً داخل كتلة ```json دون أي نص إضافي.",
}

_REPAIR_USER = {
    "en": "Transform the previous answer into valid JSON only per the schema.",
    "ar": "حوّل الإجابة السابقة إلى JSON صالح حسب المخطط فقط.",
}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _level_lines(skill: Skill, locale: Locale) -> list[str]:
    labels = _LABELS[locale]
    lines = [labels["levels"]]
    for lvl in sorted(skill.levels, key=lambda x: x.level):
        name = lvl.name_ar if locale == "ar" else lvl.name_en
        lines.append(f"- L{lvl.level}: {name}")
        description = lvl.description_ar if locale == "ar" else lvl.description_en
        if description:
            lines.append(f"  * {description}")
        if lvl.questions:
            lines.append(f"  * {labels['questions']} {' | '.join(lvl.questions[:2])}")
        if lvl.evaluation:
            lines.append(f"  * {labels['evaluation']} {lvl.evaluation[0]}")
        if lvl.progression_steps:
            lines.append(f"  * {labels['steps']} {' | '.join(lvl.progression_steps[:2])}")
        if lvl.resources:
            lines.append(f"  * {labels['resources']} {' | '.join(r.url for r in lvl.resources[:2])}")
    return lines


def build_system_prompt(
    skill_id: str,
    locale: Locale,
    catalogue: Optional[SkillCatalogue] = None,
    extra_allowed_urls: Optional[List[str]] = None,
) -> tuple[str, list[str]]:
    """
    Return (system_prompt, allowed_urls).

    Unknown skills get the generic instructions and only the configured
    extra_allowed_urls as allowlist.
    """
    catalogue = catalogue or default_catalogue()
    labels = _LABELS[locale]
    skill = catalogue.get(skill_id)
    lines = list(_INSTRUCTIONS[locale])
    allowed: list[str] = list(extra_allowed_urls or [])

    if skill is None:
        logger.info("Skill not in catalogue skill_id=%s locale=%s", skill_id, locale)
        lines.append(labels["no_url_rule"])
        return "\n".join(lines), allowed

    name = skill.name_ar if locale == "ar" else skill.name_en
    definition = skill.definition_ar if locale == "ar" else skill.definition_en
    lines.append(f"{labels['skill']} {name}")
    if definition:
        lines.append(definition)
    if skill.levels:
        lines.extend(_level_lines(skill, locale))
    urls = skill.resource_urls()
    allowed.extend(u for u in urls if u not in allowed)
    lines.append(labels["url_rule"] if urls else labels["no_url_rule"])
    return "\n".join(lines), allowed


def build_user_messages(message: str) -> list[dict]:
    return [{"role": "user", "content": message}]


def build_repair_messages(
    messages: List[dict],
    previous_text: str,
    locale: Locale,
) -> list[dict]:
    """Conversation for the non-streaming repair call."""
    repaired = list(messages)
    if previous_text:
        repaired.append({"role": "assistant", "content": previous_text[-REPAIR_TAIL_CHARS:]})
    repaired.append({"role": "user", "content": _REPAIR_USER[locale]})
    return repaired


def repair_system_prompt(system_prompt: str, locale: Locale) -> str:
    return f"{system_prompt}\n\n{_REPAIR_SYSTEM[locale]}"
