from __future__ import annotations

import logging

from .context import RunContext
from .models import Phase, RunDocument

logger = logging.getLogger(__name__)


def change_phase(ctx: RunContext, to: Phase, reason: str | None = None) -> bool:
    """Persist a phase transition and emit ``run.phase_changed``.

    Returns:
        False when the run was already in ``to`` (nothing persisted or emitted).
    """
    previous: list[Phase] = []

    def _transition(document: RunDocument) -> None:
        previous.append(document.run.phase)
        if document.run.phase != to:
            document.run.phase = to

    current = ctx.read_state().run.phase
    if current == to:
        return False
    ctx.update_state(_transition)
    from_phase = previous[0]
    payload: dict[str, str] = {"from": from_phase.value, "to": to.value}
    if reason:
        payload["reason"] = reason
    ctx.emit("run.phase_changed", payload)
    logger.info("run %s phase %s -> %s%s", ctx.run_id, from_phase.value, to.value, f" ({reason})" if reason else "")
    return True


def phase_for_resume(document: RunDocument) -> Phase:
    """Phase to re-enter on resume; a run without a persisted plan is still planning."""
    if document.plan is None or document.run.phase in (Phase.IDLE, Phase.PLAN):
        return Phase.PLAN
    return document.run.phase
