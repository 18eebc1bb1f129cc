from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional


MAX_TAG_DEPTH = 64


class TagHierarchyError(ValueError):
    pass


@dataclass(frozen=True)
class TagNode:
    name: str
    parent_name: Optional[str] = None


def _children_index(tags: Iterable[TagNode]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for tag in tags:
        if tag.parent_name is not None:
            index.setdefault(tag.parent_name, []).append(tag.name)
    return index


def _expand(
    root: str, children: dict[str, list[str]], seen: set[str]
) -> None:
    # Parent links form a forest, so each tag is reachable from a root exactly
    # once. Meeting a tag twice on the walk down means the data holds a cycle.
    queue: deque[tuple[str, int]] = deque([(root, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= MAX_TAG_DEPTH:
            raise TagHierarchyError(
                f"Tag hierarchy under '{root}' is deeper than {MAX_TAG_DEPTH} levels"
            )
        for child in children.get(current, ()):
            if child in seen:
                raise TagHierarchyError(f"Tag hierarchy has a cycle through '{child}'")
            seen.add(child)
            queue.append((child, depth + 1))


def tag_closure(tag_name: str, tags: Iterable[TagNode]) -> set[str]:
    """Return ``tag_name`` together with every transitive descendant.

    Unknown tag names have no children and resolve to ``{tag_name}``, so a
    query scoped to them simply matches no entity.
    """
    seen = {tag_name}
    _expand(tag_name, _children_index(tags), seen)
    return seen


def tags_closure(tag_names: Iterable[str], tags: Iterable[TagNode]) -> set[str]:
    children = _children_index(tags)
    result: set[str] = set()
    for name in tag_names:
        if name in result:
            continue
        seen = {name}
        _expand(name, children, seen)
        result |= seen
    return result
