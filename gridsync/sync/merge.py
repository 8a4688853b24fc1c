"""
Merge rules for the reconciliation cache.

Every function here is pure: it takes the current pages (a tuple of tuples of
Positions) plus one incoming change and returns new pages. Nothing is mutated
in place, so the same inputs always yield the same state.
"""
from __future__ import annotations

import dataclasses
from typing import Callable, Iterable

from gridsync.models import STATUS_RESOLVED, Position

Pages = tuple[tuple[Position, ...], ...]
Location = tuple[int, int]

# Resolution strength; a merge never moves a position to a lower rank.
# A win is only derived from a payout row, which a loss render lacked.
_RANK = {"waiting": 0, "loss": 1, "win": 2}

OVERLAY_FIELDS = frozenset({"settlement_price", "settlement_status", "payout"})


def rank(position: Position) -> int:
    return _RANK[position.settlement.status]


def same_owner(a: Position, b: Position) -> bool:
    return a.user_address.lower() == b.user_address.lower()


def promotes(optimistic: Position, authoritative: Position, window: float) -> bool:
    """True when *authoritative* is the confirmed form of the *optimistic* entry."""
    return (
        optimistic.is_optimistic
        and not authoritative.is_optimistic
        and optimistic.grid_key == authoritative.grid_key
        and same_owner(optimistic, authoritative)
        and abs(optimistic.created_at - authoritative.created_at) <= window
    )


def merge_positions(existing: Position, incoming: Position) -> Position:
    """
    Combine two renders of the same trade.

    The incoming render wins, except that an optimistic render never replaces
    an authoritative one, resolution strength is never lowered and a known
    settlement price is never dropped.
    """
    if incoming.is_optimistic and not existing.is_optimistic:
        incoming, existing = existing, incoming

    result = incoming
    if rank(existing) > rank(result):
        result = dataclasses.replace(
            result,
            payout=existing.payout,
            settlement=existing.settlement,
            status=existing.status,
        )
    if result.settlement.price is None and existing.settlement.price is not None:
        result = dataclasses.replace(
            result,
            settlement=dataclasses.replace(result.settlement, price=existing.settlement.price),
        )
    if result.block_number is None and existing.block_number is not None:
        result = dataclasses.replace(result, block_number=existing.block_number)
    return result


def apply_overlay(position: Position, fields: dict) -> Position:
    """
    Apply an advisory overlay.

    The settlement price fills in unless the position is already resolved with a
    price of its own. A status only moves a waiting position to resolved; a
    payout string is taken together with such a status change.
    """
    unknown = set(fields) - OVERLAY_FIELDS
    if unknown:
        raise ValueError(f"Unsupported overlay field(s): {', '.join(sorted(unknown))}")

    settlement = position.settlement
    payout = position.payout
    status = position.status

    price = fields.get("settlement_price")
    if price is not None and (not position.is_resolved or settlement.price is None):
        settlement = dataclasses.replace(settlement, price=price)

    new_status = fields.get("settlement_status")
    if new_status is not None and new_status not in _RANK:
        raise ValueError(f"Unknown settlement status {new_status!r}")
    if new_status and _RANK[new_status] > rank(position):
        settlement = dataclasses.replace(settlement, status=new_status)
        status = STATUS_RESOLVED
        payout = fields.get("payout") or payout

    if settlement == position.settlement and payout == position.payout:
        return position
    return dataclasses.replace(position, settlement=settlement, payout=payout, status=status)


def locate(pages: Pages, predicate: Callable[[Position], bool]) -> Location | None:
    for page_index, page in enumerate(pages):
        for item_index, position in enumerate(page):
            if predicate(position):
                return page_index, item_index
    return None


def find_match(pages: Pages, incoming: Position, window: float) -> Location | None:
    """Locate the entry *incoming* should merge into: same id, else an optimistic pairing."""
    found = locate(pages, lambda p: p.id == incoming.id)
    if found is not None:
        return found
    if incoming.is_optimistic:
        return locate(pages, lambda p: promotes(incoming, p, window))
    return locate(pages, lambda p: promotes(p, incoming, window))


def _replace_at(pages: Pages, where: Location, position: Position) -> Pages:
    page_index, item_index = where
    page = pages[page_index]
    new_page = page[:item_index] + (position,) + page[item_index + 1:]
    return pages[:page_index] + (new_page,) + pages[page_index + 1:]


def _drop(pages: Pages, predicate: Callable[[Position], bool]) -> Pages:
    return tuple(tuple(p for p in page if not predicate(p)) for page in pages)


def _merge_in_place(pages: Pages, where: Location, incoming: Position, window: float) -> Pages:
    existing = pages[where[0]][where[1]]
    merged = merge_positions(existing, incoming)
    pages = _replace_at(pages, where, merged)
    if not merged.is_optimistic:
        # Any other optimistic entry for the same trade is now redundant
        pages = _drop(pages, lambda p: p is not merged and promotes(p, merged, window))
    return pages


def upsert(pages: Pages, incoming: Position, *, batch_size: int, window: float) -> Pages:
    """Merge *incoming* into its matching entry, or prepend it to page 0."""
    where = find_match(pages, incoming, window)
    if where is not None:
        return _merge_in_place(pages, where, incoming, window)
    if not pages:
        return ((incoming,),)
    first = ((incoming,) + pages[0])[:batch_size]
    return (first,) + pages[1:]


def remove(pages: Pages, position_id: str) -> Pages:
    if locate(pages, lambda p: p.id == position_id) is None:
        return pages
    return _drop(pages, lambda p: p.id == position_id)


def overlay(pages: Pages, predicate: Callable[[Position], bool], fields: dict) -> Pages:
    return tuple(
        tuple(apply_overlay(p, fields) if predicate(p) else p for p in page)
        for page in pages
    )


def load_page(
    pages: Pages,
    index: int,
    incoming: Iterable[Position],
    *,
    batch_size: int,
    window: float,
) -> Pages:
    """
    Merge a fetched page.

    Entries already present anywhere are merged in place. The rest form a new
    page when *index* is past the loaded pages, or are appended to the existing
    page at *index* otherwise.
    """
    fresh: list[Position] = []
    for position in incoming:
        where = find_match(pages, position, window)
        if where is not None:
            pages = _merge_in_place(pages, where, position, window)
        elif all(p.id != position.id for p in fresh):
            fresh.append(position)

    if index >= len(pages):
        return pages + (tuple(fresh),)
    page = pages[index] + tuple(fresh)
    if index == 0:
        page = page[:batch_size]
    return pages[:index] + (page,) + pages[index + 1:]


def flatten(pages: Pages) -> list[Position]:
    return [p for page in pages for p in page]
