"""Pick first/next/always prompt fragments by turn number."""

from __future__ import annotations

from typing import Iterable

BATCH_DELIMITER = "\n---\n"


def select_fragment(
    turn_count: int,
    first: str,
    next: str,
    always: str,
    separator: str = "\n",
) -> str:
    """Combine the fragments that apply to *turn_count*.

    ``first`` applies to the opening turn, ``next`` to every later one, and
    ``always`` to all of them. Empty fragments are skipped.
    """
    parts: list[str] = []
    if turn_count == 0 and first:
        parts.append(first)
    if turn_count > 0 and next:
        parts.append(next)
    if always:
        parts.append(always)
    return separator.join(parts).strip()


def build_outbound_text(
    turn_count: int,
    prefix_first: str,
    prefix_next: str,
    prefix_always: str,
    ai_text: str,
) -> str:
    """Wrap the model reply with the configured output prefixes.

    No separator is inserted and the prefixes are not stripped, so operators
    control spacing themselves: ``("A", "B", "C")`` around ``"X"`` on the
    first turn gives ``"AXC"``.
    """
    parts: list[str] = []
    if turn_count == 0 and prefix_first:
        parts.append(prefix_first)
    if turn_count > 0 and prefix_next:
        parts.append(prefix_next)
    if ai_text:
        parts.append(ai_text.strip())
    if prefix_always:
        parts.append(prefix_always)
    return "".join(parts)


def build_user_input(context: str, bodies: Iterable[str], suffix: str = "") -> str:
    """Batch pending message bodies into one user input, in arrival order."""
    combined = BATCH_DELIMITER.join(bodies)
    return "\n\n".join(part for part in (context, combined) if part).strip() + suffix
