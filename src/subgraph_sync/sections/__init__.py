"""Section registry and selection helpers."""

from __future__ import annotations

from typing import Iterable

from subgraph_sync.sections.agents import AgentsSection
from subgraph_sync.sections.associations import AssociationRevocationsSection, AssociationsSection
from subgraph_sync.sections.base import EntityChange, SectionSpec, UpstreamRecord
from subgraph_sync.sections.feedback import (
    FeedbackResponsesSection,
    FeedbackRevocationsSection,
    FeedbacksSection,
)
from subgraph_sync.sections.metadata import AgentMetadataSection
from subgraph_sync.sections.validations import ValidationRequestsSection, ValidationResponsesSection

# Default run order
REGISTRY: tuple[SectionSpec, ...] = (
    AgentsSection(),
    AgentMetadataSection(),
    FeedbacksSection(),
    FeedbackRevocationsSection(),
    FeedbackResponsesSection(),
    ValidationRequestsSection(),
    ValidationResponsesSection(),
    AssociationsSection(),
    AssociationRevocationsSection(),
)

SECTION_GROUPS: dict[str, tuple[str, ...]] = {
    "feedback": ("feedbacks", "feedback-revocations", "feedback-responses"),
    "validations": ("validation-requests", "validation-responses"),
    "metadata": ("agent-metadata",),
    "all": tuple(section.name for section in REGISTRY),
}

_BY_NAME = {section.name: section for section in REGISTRY}


def get_section(name: str) -> SectionSpec:
    """Look up a section by name. Raises KeyError for unknown names."""
    try:
        return _BY_NAME[name.strip().lower()]
    except KeyError:
        raise KeyError(f"Unknown section: {name}") from None


def resolve_sections(names: Iterable[str] | None = None) -> list[SectionSpec]:
    """
    Expand section names and group aliases into registry order.

    None or an empty selection means every section. Duplicates collapse.

    Raises:
        KeyError: for a name that is neither a section nor a group
    """
    requested = [n.strip().lower() for n in (names or []) if n and n.strip()]
    if not requested:
        return list(REGISTRY)

    wanted: set[str] = set()
    for name in requested:
        if name in SECTION_GROUPS:
            wanted.update(SECTION_GROUPS[name])
        elif name in _BY_NAME:
            wanted.add(name)
        else:
            known = ", ".join([*_BY_NAME, *SECTION_GROUPS])
            raise KeyError(f"Unknown section or group: {name} (known: {known})")
    return [section for section in REGISTRY if section.name in wanted]


__all__ = [
    "REGISTRY",
    "SECTION_GROUPS",
    "EntityChange",
    "SectionSpec",
    "UpstreamRecord",
    "get_section",
    "resolve_sections",
]
