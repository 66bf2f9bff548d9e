"""
Tag Taxonomy Expansion

Expands a requested tag list through the configured synonym map
(alias -> canonical, searched in both directions) and hierarchy map
(child -> parent, a parent search reaches every descendant).

Pure functions: relations are passed in as a TagRelationsConfig value,
never read from ambient state.

Public API:
    expand_with_synonyms(tags, synonyms) -> list[str]
    expand_with_hierarchy(tags, hierarchies) -> list[str]
    expand_tags(tags, relations) -> list[str]
    validate_required_tags(entity_type, tags, required) -> (bool, list[str])
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from factctl.config import TagRelationsConfig

logger = logging.getLogger(__name__)


def _ordered_add(out: List[str], seen: Set[str], tag: str) -> bool:
    if tag in seen:
        return False
    seen.add(tag)
    out.append(tag)
    return True


def _invert(mapping: Mapping[str, str]) -> Dict[str, List[str]]:
    """value -> [keys], keys in mapping order."""
    inverted: Dict[str, List[str]] = {}
    for key, value in mapping.items():
        inverted.setdefault(value, []).append(key)
    return inverted


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def expand_with_synonyms(tags: Iterable[str], synonyms: Mapping[str, str]) -> List[str]:
    """Add canonical forms of aliases and aliases of canonical forms.

    The alias map is stored one way but searched both ways. Chains
    (a -> b, b -> c) are followed until no new tag appears.
    """
    out: List[str] = []
    seen: Set[str] = set()
    for tag in tags:
        _ordered_add(out, seen, tag)
    if not synonyms:
        return out

    aliases_of = _invert(synonyms)
    queue = list(out)
    while queue:
        tag = queue.pop(0)
        related = []
        canonical = synonyms.get(tag)
        if canonical:
            related.append(canonical)
        related.extend(aliases_of.get(tag, ()))
        for other in related:
            if _ordered_add(out, seen, other):
                queue.append(other)
    return out


def expand_with_hierarchy(tags: Iterable[str], hierarchies: Mapping[str, str]) -> List[str]:
    """Add every descendant of each tag. Never adds a parent.

    Iterative walk with a visited set: a looping child -> parent map is cut
    at the first revisited tag.
    """
    out: List[str] = []
    seen: Set[str] = set()
    for tag in tags:
        _ordered_add(out, seen, tag)
    if not hierarchies:
        return out

    children_of = _invert(hierarchies)
    for root in list(out):
        stack = list(reversed(children_of.get(root, ())))
        while stack:
            child = stack.pop()
            if not _ordered_add(out, seen, child):
                continue
            stack.extend(reversed(children_of.get(child, ())))
    return out


def expand_tags(
    tags: Iterable[str], relations: Optional[TagRelationsConfig] = None,
) -> List[str]:
    """Full expansion: synonyms, then hierarchy, then synonyms again.

    The sequence is repeated until no pass adds a tag, so the result is
    closed: expand_tags(expand_tags(T)) == expand_tags(T). Input order is
    kept for the requested tags; new tags follow in discovery order.
    Empty input returns an empty list.
    """
    requested = [t for t in tags if t]
    if not requested:
        return []
    relations = relations or TagRelationsConfig()

    expanded = expand_with_synonyms(requested, relations.synonyms)
    while True:
        size = len(expanded)
        expanded = expand_with_hierarchy(expanded, relations.hierarchies)
        expanded = expand_with_synonyms(expanded, relations.synonyms)
        if len(expanded) == size:
            break

    if len(expanded) != len(requested):
        logger.debug("Expanded tags %s -> %s", requested, expanded)
    return expanded


# ---------------------------------------------------------------------------
# Required tags
# ---------------------------------------------------------------------------


def validate_required_tags(
    entity_type: str,
    tags: Iterable[str],
    required: Optional[Mapping[str, List[str]]] = None,
) -> Tuple[bool, List[str]]:
    """Check that every required pattern for entity_type is satisfied.

    A pattern ending in ``*`` matches any tag with that prefix; anything
    else must match exactly. Returns (valid, missing_patterns).
    """
    patterns = (required or {}).get(entity_type) or []
    provided = list(tags)
    provided_set = set(provided)
    missing: List[str] = []
    for pattern in patterns:
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            if not any(t.startswith(prefix) for t in provided):
                missing.append(pattern)
        elif pattern not in provided_set:
            missing.append(pattern)
    return (not missing, missing)
