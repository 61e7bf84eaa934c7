# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Most-recently-used target lines and messages of a tenant."""

from __future__ import annotations

MAX_RECENT_TARGETS = 30
MAX_RECENT_MESSAGES = 20


def empty_recent() -> dict[str, list[str]]:
    return {"targets": [], "messages": []}


def _push_front(items: list[str], value: str) -> list[str]:
    return [value, *(item for item in items if item != value)]


def push_recent(recent: dict[str, list[str]], targets_text: str, default_message: str) -> dict[str, list[str]]:
    """Return ``recent`` with the new target lines and message moved to the front.

    Every non-empty line of ``targets_text`` is recorded as-is. Both lists stay
    de-duplicated and are capped at 30 targets and 20 messages.
    """
    targets = list(recent.get("targets") or [])
    messages = list(recent.get("messages") or [])
    for line in str(targets_text or "").splitlines():
        line = line.strip()
        if line:
            targets = _push_front(targets, line)
    message = str(default_message or "").strip()
    if message:
        messages = _push_front(messages, message)
    return {"targets": targets[:MAX_RECENT_TARGETS], "messages": messages[:MAX_RECENT_MESSAGES]}
