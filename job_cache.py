"""
job_cache.py  —  Requirement handoff between the negotiation and delivery phases.

The negotiation phase writes {job_kind, requirement} under the job id; the
delivery phase reads it back.  A miss never raises: get() returns a
CachedJob with job_kind "unknown" and an empty requirement, which the
pipeline turns into an unsupported-job deliverable.

Entries live for the process lifetime unless ttl_seconds is set, in which
case an entry older than the TTL is evicted when it is next read.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

log = logging.getLogger("job_cache")

UNKNOWN_JOB_KIND = "unknown"


@dataclass
class CachedJob:
    job_id:      str
    job_kind:    str            = UNKNOWN_JOB_KIND
    requirement: dict           = field(default_factory=dict)
    cached_at:   Optional[float] = None

    @property
    def found(self) -> bool:
        return self.cached_at is not None


class JobCache:
    def __init__(self, ttl_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CachedJob] = {}
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        return str(job_id) in self._entries

    def set(self, job_id, job_kind: str, requirement: dict) -> CachedJob:
        key = str(job_id)
        if key in self._entries:
            log.debug("Job %s re-negotiated; overwriting cached requirement", key)
        entry = CachedJob(
            job_id=key,
            job_kind=job_kind or UNKNOWN_JOB_KIND,
            requirement=requirement if isinstance(requirement, dict) else {},
            cached_at=self._clock(),
        )
        self._entries[key] = entry
        return entry

    def get(self, job_id) -> CachedJob:
        key = str(job_id)
        entry = self._entries.get(key)
        if entry is None:
            return CachedJob(job_id=key)
        if self._ttl is not None and self._clock() - entry.cached_at > self._ttl:
            log.info("Job %s cache entry expired after %.0fs", key, self._ttl)
            del self._entries[key]
            return CachedJob(job_id=key)
        return entry
