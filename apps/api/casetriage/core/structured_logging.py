"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    case_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict (IDs only, never content)."""
    context: dict[str, Any] = {}
    if case_id:
        context["case_id"] = case_id
    if actor_id:
        context["actor_id"] = actor_id
    if action:
        context["action"] = action
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
