from __future__ import annotations

from forumai.domain.state import Plan


FEATURE_SEMANTIC_SEARCH = "semantic_search"
FEATURE_CONTENT_INDEXING = "content_indexing"
FEATURE_AI_CHATBOT = "ai_chatbot"
FEATURE_TOPIC_GENERATOR = "ai_topic_generator"
FEATURE_REPLY_GENERATOR = "ai_reply_generator"
FEATURE_AUTO_TAGS = "auto_tag_generation"
FEATURE_CLOUD_STORAGE = "vector_db_cloud_storage"
FEATURE_PRIORITY_SUPPORT = "priority_support"

# Higher numbers unlock everything below them; trial and starter share a tier.
PLAN_LEVELS: dict[Plan, int] = {
    Plan.FREE_TRIAL: 0,
    Plan.STARTER: 0,
    Plan.PROFESSIONAL: 1,
    Plan.BUSINESS: 2,
    Plan.ENTERPRISE: 3,
}

FEATURE_MIN_PLAN: dict[str, Plan] = {
    FEATURE_SEMANTIC_SEARCH: Plan.STARTER,
    FEATURE_CONTENT_INDEXING: Plan.STARTER,
    FEATURE_AI_CHATBOT: Plan.STARTER,
    FEATURE_TOPIC_GENERATOR: Plan.PROFESSIONAL,
    FEATURE_REPLY_GENERATOR: Plan.PROFESSIONAL,
    FEATURE_AUTO_TAGS: Plan.PROFESSIONAL,
    FEATURE_CLOUD_STORAGE: Plan.BUSINESS,
    FEATURE_PRIORITY_SUPPORT: Plan.ENTERPRISE,
}

TASK_TYPE_FEATURES = {
    "topic_generator": FEATURE_TOPIC_GENERATOR,
    "reply_generator": FEATURE_REPLY_GENERATOR,
    "tag_maintenance": FEATURE_AUTO_TAGS,
}


def plan_level(plan: Plan | str) -> int:
    return PLAN_LEVELS[Plan.parse(plan) if isinstance(plan, str) else plan]


def plan_allows(plan: Plan | str, feature: str, *, features_enabled: list[str] | None = None) -> bool:
    # Explicit remote feature grants win over the plan ladder.
    if features_enabled and feature in features_enabled:
        return True
    required = FEATURE_MIN_PLAN.get(feature)
    if required is None:
        return False
    return plan_level(plan) >= PLAN_LEVELS[required]
