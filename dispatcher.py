"""
dispatcher.py  —  Two-phase job lifecycle.

  IDLE → NEGOTIATING → ACCEPTED → DELIVERING → DELIVERED → IDLE

A delivered job is forgotten; on_new_task still reports DELIVERED for the
notification that finished it.

A notification is (job, memo).  Only memos with status PENDING are acted on:

  next_phase 1  (negotiation)  extract {name, requirement}, default the chain,
                               cache it, respond(True, ACCEPT_REASON)
  next_phase 3  (delivery)     read the cache, run the pipeline,
                               deliver(deliverable)

Anything else is logged and left alone.  The transport objects are
duck-typed: ``job`` needs ``id`` and async ``respond(accept, reason)`` /
``deliver(deliverable)``; memo fields are read from attributes or dict keys
in snake_case or camelCase, and enum-valued fields are compared by value.

Transport call failures propagate to the caller.  Failures inside
deliverable synthesis do not: they are logged and turned into an
internal-error deliverable so every delivery notification is answered.
"""
from __future__ import annotations

import copy
import json
import logging
import os
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from evidence import EvidenceGatherer
from job_cache import UNKNOWN_JOB_KIND, JobCache
from pipeline import build_deliverable, internal_error_deliverable

log = logging.getLogger("dispatcher")

DEFAULT_CHAIN = os.environ.get("DEFAULT_CHAIN", "base").strip().lower() or "base"

ACCEPT_REASON = (
    "Accepted by AegisAI provider — validation and risk logic will be applied at delivery."
)

PHASE_NEGOTIATION = 1
PHASE_TRANSACTION = 2
PHASE_EVALUATION  = 3
MEMO_PENDING      = "PENDING"


class JobState(str, Enum):
    IDLE        = "idle"
    NEGOTIATING = "negotiating"
    ACCEPTED    = "accepted"
    DELIVERING  = "delivering"
    DELIVERED   = "delivered"


# ══════════════════════════════════════════════════════════════════════════════
# Duck-typed field access
# ══════════════════════════════════════════════════════════════════════════════

def _field(obj: Any, *names: str) -> Any:
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            if obj.get(name) is not None:
                return obj[name]
        else:
            value = getattr(obj, name, None)
            if value is not None:
                return value
    return None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _phase(value: Any) -> Optional[int]:
    try:
        return int(_enum_value(value))
    except (TypeError, ValueError):
        return None


def _as_mapping(value: Any) -> Optional[dict]:
    """dict as-is, JSON object strings decoded, anything else None."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            decoded = json.loads(value)
        except ValueError:
            log.debug("Memo content is not valid JSON: %.80s", value)
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def extract_negotiation(job: Any, memo: Any) -> Tuple[str, dict]:
    """
    (job_kind, requirement) from the memo's structured content, falling back
    to the job input ({name, requirement} or the bare requirement).
    """
    content = _as_mapping(_field(memo, "structured_content", "structuredContent", "content"))
    if content is not None:
        name = content.get("name") or UNKNOWN_JOB_KIND
        requirement = content.get("requirement")
        return str(name), requirement if isinstance(requirement, dict) else {}

    job_input = _as_mapping(_field(job, "input", "service_requirement", "requirement"))
    if job_input is not None:
        name = job_input.get("name") or _field(job, "name") or UNKNOWN_JOB_KIND
        requirement = job_input.get("requirement")
        if not isinstance(requirement, dict):
            requirement = job_input
        return str(name), requirement

    return UNKNOWN_JOB_KIND, {}


# ══════════════════════════════════════════════════════════════════════════════
# PhaseDispatcher
# ══════════════════════════════════════════════════════════════════════════════

class PhaseDispatcher:
    def __init__(self, cache: JobCache,
                 gatherer: Optional[EvidenceGatherer],
                 default_chain: str = DEFAULT_CHAIN):
        self.cache = cache
        self.gatherer = gatherer
        self.default_chain = default_chain
        self._states: Dict[str, JobState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def state_of(self, job_id: Any) -> JobState:
        return self._states.get(str(job_id), JobState.IDLE)

    def _transition(self, job_id: str, state: JobState) -> None:
        prev = self.state_of(job_id)
        self._states[job_id] = state
        log.debug("Job %s: %s → %s", job_id, prev.value, state.value)

    async def on_new_task(self, job: Any, memo: Any = None) -> Optional[JobState]:
        """Handle one notification; returns the job's state afterwards, None if ignored."""
        job_id = str(_field(job, "id", "job_id"))
        status = _enum_value(_field(memo, "status"))
        if memo is None or str(status).upper() != MEMO_PENDING:
            log.info("Job %s: no pending memo to act on (status=%s)", job_id, status)
            return None

        phase = _phase(_field(memo, "next_phase", "nextPhase"))
        if phase == PHASE_NEGOTIATION:
            await self._negotiate(job_id, job, memo)
            return self.state_of(job_id)
        if phase == PHASE_EVALUATION:
            await self._deliver(job_id, job)
            return JobState.DELIVERED
        log.info("Job %s: memo next_phase %r not handled", job_id, phase)
        return None

    async def _negotiate(self, job_id: str, job: Any, memo: Any) -> None:
        self._transition(job_id, JobState.NEGOTIATING)
        job_kind, requirement = extract_negotiation(job, memo)
        requirement = copy.deepcopy(requirement)
        chain = requirement.get("chain")
        if chain is None or (isinstance(chain, str) and not chain.strip()):
            requirement["chain"] = self.default_chain

        self.cache.set(job_id, job_kind, requirement)
        log.info("Job %s negotiated as %r (fields=%s)", job_id, job_kind, sorted(requirement))

        await job.respond(True, ACCEPT_REASON)
        self._transition(job_id, JobState.ACCEPTED)
        log.info("Job %s accepted", job_id)

    async def _deliver(self, job_id: str, job: Any) -> None:
        self._transition(job_id, JobState.DELIVERING)
        cached = self.cache.get(job_id)
        if not cached.found:
            log.warning("Job %s reached delivery with no cached negotiation; "
                        "degrading to an unsupported-job deliverable", job_id)

        try:
            deliverable = await build_deliverable(cached.job_kind, cached.requirement,
                                                  self.gatherer)
        except Exception as exc:
            log.exception("Job %s: deliverable synthesis failed: %s", job_id, exc)
            deliverable = internal_error_deliverable(cached.job_kind, cached.requirement)
        if not cached.found:
            deliverable["negotiation_cached"] = False

        log.info("Job %s deliverable: kind=%s decision=%s score=%s confidence=%s",
                 job_id, deliverable.get("job_kind"), deliverable.get("decision"),
                 deliverable.get("risk_score"), deliverable.get("confidence_level"))
        await job.deliver(deliverable)
        self._transition(job_id, JobState.DELIVERED)
        log.info("Job %s delivered", job_id)
        # Delivered jobs drop back to IDLE.
        self._states.pop(job_id, None)
