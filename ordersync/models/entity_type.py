"""EntityType constants for the ordered collection families.

Provides a simple constants container instead of an Enum to keep imports
lightweight in architectural tests. Each entity type owns one table whose
unique index covers ``(parent_key, item_order)``.
"""

from __future__ import annotations


class EntityType:
    MODULE = "module"  # parent_key = workspace id
    QUESTION = "question"  # parent_key = module id
    OPTION = "option"  # parent_key = question id


ENTITY_TABLES = {
    EntityType.MODULE: "quiz_module",
    EntityType.QUESTION: "module_question",
    EntityType.OPTION: "question_option",
}


def table_for(entity_type: str) -> str:
    """Return the table backing ``entity_type``; KeyError when unknown."""
    return ENTITY_TABLES[str(entity_type)]


__all__ = ["EntityType", "ENTITY_TABLES", "table_for"]
