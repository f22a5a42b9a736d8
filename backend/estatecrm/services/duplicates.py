"""
Duplicate property detection.

Listings are compared pairwise on three fields:
- address: case-insensitive exact match
- area_sqft: within AREA_TOLERANCE_SQFT
- price: within PRICE_TOLERANCE (minor currency units)

Groups are advisory. Nothing here touches the database; callers fetch the
organization's properties, run detection, and re-run it after any change.

The default grouping is anchor based: each property not yet grouped collects
the later, ungrouped properties that match *it*, and every member of the
resulting group is consumed. A chain A~B, B~C where A does not match C
therefore yields the group [A, B] and leaves C out. ``transitive=True``
switches to connected components over all matching pairs.
"""

from typing import Any, Hashable, Optional, Protocol, Sequence, TypeVar


AREA_TOLERANCE_SQFT = 50
PRICE_TOLERANCE = 10_000


class PropertyLike(Protocol):
    """Fields the detector reads from a property."""

    id: Any
    address: Optional[str]
    area_sqft: Optional[float]
    price: Optional[int]


P = TypeVar("P", bound=PropertyLike)


def _normalized_address(address: Optional[str]) -> Optional[str]:
    return address.lower() if address is not None else None


def is_probable_duplicate(first: PropertyLike, second: PropertyLike) -> bool:
    """Return True when two properties share address, area and price."""
    if _normalized_address(first.address) != _normalized_address(second.address):
        return False

    # Missing measurements compare as zero
    area_gap = abs((first.area_sqft or 0) - (second.area_sqft or 0))
    if area_gap > AREA_TOLERANCE_SQFT:
        return False

    price_gap = abs((first.price or 0) - (second.price or 0))
    return price_gap <= PRICE_TOLERANCE


def find_duplicate_groups(
    properties: Sequence[P],
    transitive: bool = False,
) -> list[list[P]]:
    """
    Partition properties into groups of probable duplicates.

    Args:
        properties: Properties of a single organization, in display order
        transitive: Group by connected components instead of anchor matches

    Returns:
        Groups of two or more properties, in order of their first member.
        No property appears in more than one group.
    """
    if transitive:
        return _connected_groups(properties)

    groups: list[list[P]] = []
    consumed: set[Hashable] = set()

    for index, anchor in enumerate(properties):
        if anchor.id in consumed:
            continue

        matches = [
            other
            for other in properties[index + 1:]
            if other.id not in consumed and is_probable_duplicate(anchor, other)
        ]
        if not matches:
            continue

        group = [anchor, *matches]
        groups.append(group)
        consumed.update(member.id for member in group)

    return groups


def _connected_groups(properties: Sequence[P]) -> list[list[P]]:
    """Union-find over every matching pair."""
    parent = list(range(len(properties)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(properties)):
        for j in range(i + 1, len(properties)):
            if is_probable_duplicate(properties[i], properties[j]):
                root_i, root_j = find(i), find(j)
                if root_i != root_j:
                    # Keep the earliest index as root so groups stay in input order
                    parent[max(root_i, root_j)] = min(root_i, root_j)

    members: dict[int, list[P]] = {}
    for i, prop in enumerate(properties):
        members.setdefault(find(i), []).append(prop)

    return [group for _, group in sorted(members.items()) if len(group) > 1]

