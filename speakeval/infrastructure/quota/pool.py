"""
Credential pool with atomic checkout, cooldown and exhaustion tracking.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Any

from ...config import (
    RATE_LIMIT_COOLDOWN_SECONDS,
    ESCALATED_COOLDOWN_SECONDS,
    ESCALATION_AFTER_RATE_LIMITS,
    DAILY_QUOTA_COOLDOWN_SECONDS,
)
from ...errors import InvalidInput, NoCredentialAvailable

logger = logging.getLogger("quota_pool")


class Capability(str, Enum):
    """External capabilities a credential can serve."""
    SPEECH_TO_TEXT = "speech_to_text"
    SCORING = "scoring"


@dataclass(frozen=True)
class Credential:
    """One API credential. The secret never appears in repr or logs."""
    credential_id: str
    secret: str = field(repr=False)
    capabilities: FrozenSet[Capability] = frozenset(Capability)
    per_minute_limit: Optional[int] = None
    per_day_limit: Optional[float] = None
    label: str = ""


@dataclass
class _CredentialState:
    """Mutable bookkeeping for one credential. Only touched under the pool lock."""
    credential: Credential
    locked_by: Optional[str] = None
    locked_until: float = 0.0
    last_used_at: float = 0.0
    usage_day: str = ""
    units_today: float = 0.0
    total_units: float = 0.0
    minute_started_at: float = 0.0
    requests_this_minute: int = 0
    cooldown_until: Dict[Capability, float] = field(default_factory=dict)
    cooldown_reason: Dict[Capability, str] = field(default_factory=dict)
    disabled: Dict[Capability, str] = field(default_factory=dict)
    consecutive_rate_limits: Dict[Capability, int] = field(default_factory=dict)


def _day_key(ts: float) -> str:
    return time.strftime("%Y-%m-%d", time.gmtime(ts))


class QuotaPool:
    """
    Hands out credentials per capability while respecting per-minute and
    per-day ceilings and temporary/permanent exhaustion.

    Every selection and lock happens inside one critical section, so two
    concurrent checkouts can never be handed the same locked credential.
    """

    def __init__(self,
                 credentials: Iterable[Credential] = (),
                 clock: Callable[[], float] = time.time,
                 rate_limit_cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS,
                 escalated_cooldown_seconds: float = ESCALATED_COOLDOWN_SECONDS,
                 escalation_after: int = ESCALATION_AFTER_RATE_LIMITS):
        self._clock = clock
        self._lock = threading.Lock()
        self._available = threading.Condition(self._lock)
        self._states: Dict[str, _CredentialState] = {}
        self.rate_limit_cooldown_seconds = rate_limit_cooldown_seconds
        self.escalated_cooldown_seconds = escalated_cooldown_seconds
        self.escalation_after = escalation_after
        for credential in credentials:
            self.add_credential(credential)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def add_credential(self, credential: Credential) -> None:
        """Register a credential. Re-adding an id replaces its definition but keeps usage."""
        if not credential.credential_id:
            raise InvalidInput("credential_id must not be empty")
        with self._available:
            existing = self._states.get(credential.credential_id)
            if existing:
                existing.credential = credential
            else:
                self._states[credential.credential_id] = _CredentialState(credential=credential)
            self._available.notify_all()
        logger.info("Registered credential %s for %s", credential.credential_id,
                    sorted(c.value for c in credential.capabilities))

    # ------------------------------------------------------------------
    # Checkout / release
    # ------------------------------------------------------------------

    def checkout(self,
                 capability: Capability,
                 job_id: str,
                 lock_duration_seconds: float,
                 wait_timeout: Optional[float] = None) -> Credential:
        """
        Atomically select a usable credential and lock it for this job.

        Args:
            capability: Capability the caller needs
            job_id: Owner of the lock
            lock_duration_seconds: How long the lock holds unless released
            wait_timeout: If set, block up to this many seconds for a credential

        Returns:
            The locked Credential

        Raises:
            NoCredentialAvailable: Pool empty, or every credential cooling down,
                locked, over its ceilings or disabled
        """
        if lock_duration_seconds <= 0:
            raise InvalidInput("lock_duration_seconds must be positive")
        deadline = None if wait_timeout is None else time.monotonic() + wait_timeout

        with self._available:
            while True:
                now = self._clock()
                state = self._select(capability, now)
                if state is not None:
                    state.locked_by = job_id
                    state.locked_until = now + lock_duration_seconds
                    state.last_used_at = now
                    state.requests_this_minute += 1
                    logger.debug("Checked out %s for %s (job %s, lock %.0fs)",
                                 state.credential.credential_id, capability.value, job_id,
                                 lock_duration_seconds)
                    return state.credential

                error = self._unavailable(capability, now)
                if deadline is None or error.permanent:
                    raise error
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise error
                pause = min(remaining, 1.0)
                if error.retry_after_seconds is not None:
                    pause = min(pause, max(0.01, error.retry_after_seconds))
                self._available.wait(timeout=pause)

    def holds(self, credential_id: str, job_id: str) -> bool:
        """True while job_id still holds an unexpired lock on the credential."""
        with self._lock:
            state = self._states.get(credential_id)
            return state is not None and state.locked_by == job_id and state.locked_until > self._clock()

    def try_checkout(self, capability: Capability, job_id: str,
                     lock_duration_seconds: float) -> Optional[Credential]:
        """Like checkout, but returns None instead of raising."""
        try:
            return self.checkout(capability, job_id, lock_duration_seconds)
        except NoCredentialAvailable:
            return None

    def release(self, credential_id: str, job_id: str, cooldown_seconds: float = 0.0,
                capability: Optional[Capability] = None) -> bool:
        """
        Release a lock held by job_id, optionally starting a short cooldown.

        Returns:
            True if the lock was held by job_id and has been released
        """
        with self._available:
            state = self._states.get(credential_id)
            if state is None or state.locked_by != job_id:
                return False
            now = self._clock()
            state.locked_by = None
            state.locked_until = 0.0
            if cooldown_seconds > 0:
                targets = [capability] if capability else list(state.credential.capabilities)
                for cap in targets:
                    self._cool_down(state, cap, now + cooldown_seconds, "release")
            self._available.notify_all()
            return True

    # ------------------------------------------------------------------
    # Exhaustion / usage
    # ------------------------------------------------------------------

    def mark_exhausted(self, credential_id: str, capability: Capability, permanent: bool,
                       retry_after_seconds: Optional[float] = None, reason: str = "") -> None:
        """
        Record a rate-limit or quota signal for one credential and capability.

        Permanent exhaustion disables the credential for the capability until
        reactivate() is called. Temporary exhaustion schedules a cooldown; repeated
        rate limits escalate it. Any lock on the credential is dropped.
        """
        with self._available:
            state = self._require(credential_id)
            now = self._clock()
            state.locked_by = None
            state.locked_until = 0.0
            if permanent:
                state.disabled[capability] = reason or "exhausted"
                logger.error("Credential %s disabled for %s: %s", credential_id, capability.value,
                             reason or "permanent exhaustion")
            else:
                strikes = state.consecutive_rate_limits.get(capability, 0) + 1
                state.consecutive_rate_limits[capability] = strikes
                cooldown = retry_after_seconds if retry_after_seconds is not None \
                    else self.rate_limit_cooldown_seconds
                if strikes >= self.escalation_after:
                    cooldown = max(cooldown, self.escalated_cooldown_seconds)
                kind = "daily" if cooldown >= DAILY_QUOTA_COOLDOWN_SECONDS else "rate_limit"
                self._cool_down(state, capability, now + cooldown, kind)
                logger.warning("Credential %s cooling down for %s: %.0fs (strike %d)%s",
                               credential_id, capability.value, cooldown, strikes,
                               f" - {reason}" if reason else "")
            self._available.notify_all()

    def record_usage(self, credential_id: str, units: float) -> None:
        """Accumulate consumption (e.g. audio seconds) regardless of call outcome."""
        if units < 0:
            raise InvalidInput("units must not be negative")
        with self._lock:
            state = self._require(credential_id)
            self._roll_day(state, self._clock())
            state.units_today += units
            state.total_units += units

    def record_success(self, credential_id: str, capability: Capability) -> None:
        """Reset the consecutive rate-limit counter after a successful call."""
        with self._lock:
            state = self._require(credential_id)
            state.consecutive_rate_limits.pop(capability, None)

    def reactivate(self, credential_id: str, capability: Optional[Capability] = None) -> None:
        """Manually clear disablement and cooldowns for one or all capabilities."""
        with self._available:
            state = self._require(credential_id)
            caps = [capability] if capability else list(Capability)
            for cap in caps:
                state.disabled.pop(cap, None)
                state.cooldown_until.pop(cap, None)
                state.cooldown_reason.pop(cap, None)
                state.consecutive_rate_limits.pop(cap, None)
            logger.info("Credential %s reactivated for %s", credential_id,
                        [c.value for c in caps])
            self._available.notify_all()

    def snapshot(self) -> List[Dict[str, Any]]:
        """Point-in-time status of every credential, without secrets."""
        with self._lock:
            now = self._clock()
            rows = []
            for state in self._states.values():
                self._roll_day(state, now)
                rows.append({
                    "credential_id": state.credential.credential_id,
                    "label": state.credential.label,
                    "locked_by": state.locked_by if state.locked_until > now else None,
                    "units_today": state.units_today,
                    "total_units": state.total_units,
                    "last_used_at": state.last_used_at,
                    "cooling_down": {
                        cap.value: round(until - now, 3)
                        for cap, until in state.cooldown_until.items() if until > now
                    },
                    "disabled": {cap.value: why for cap, why in state.disabled.items()},
                })
            return rows

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _require(self, credential_id: str) -> _CredentialState:
        state = self._states.get(credential_id)
        if state is None:
            raise InvalidInput(f"Unknown credential: {credential_id}")
        return state

    def _cool_down(self, state: _CredentialState, capability: Capability, until: float,
                   reason: str) -> None:
        current = state.cooldown_until.get(capability, 0.0)
        if until > current:
            state.cooldown_until[capability] = until
            state.cooldown_reason[capability] = reason

    def _roll_day(self, state: _CredentialState, now: float) -> None:
        today = _day_key(now)
        if state.usage_day == today:
            return
        if state.usage_day:
            logger.info("Daily usage reset for %s (%.1f units on %s)",
                        state.credential.credential_id, state.units_today, state.usage_day)
            for cap, why in list(state.cooldown_reason.items()):
                if why == "daily":
                    state.cooldown_until.pop(cap, None)
                    state.cooldown_reason.pop(cap, None)
        state.usage_day = today
        state.units_today = 0.0

    def _roll_minute(self, state: _CredentialState, now: float) -> None:
        if now - state.minute_started_at >= 60.0:
            state.minute_started_at = now
            state.requests_this_minute = 0

    def _remaining_daily(self, state: _CredentialState) -> float:
        limit = state.credential.per_day_limit
        if limit is None:
            return math.inf
        return limit - state.units_today

    def _usable(self, state: _CredentialState, capability: Capability, now: float) -> bool:
        cred = state.credential
        if capability not in cred.capabilities or capability in state.disabled:
            return False
        if state.cooldown_until.get(capability, 0.0) > now:
            return False
        if state.locked_by is not None and state.locked_until > now:
            return False
        self._roll_day(state, now)
        self._roll_minute(state, now)
        if cred.per_minute_limit is not None and state.requests_this_minute >= cred.per_minute_limit:
            return False
        if self._remaining_daily(state) <= 0:
            return False
        return True

    def _select(self, capability: Capability, now: float) -> Optional[_CredentialState]:
        usable = [s for s in self._states.values() if self._usable(s, capability, now)]
        if not usable:
            return None
        # most remaining daily quota first, then least recently used
        usable.sort(key=lambda s: (-self._remaining_daily(s), s.last_used_at,
                                   s.credential.credential_id))
        return usable[0]

    def _unavailable(self, capability: Capability, now: float) -> NoCredentialAvailable:
        serving = [s for s in self._states.values() if capability in s.credential.capabilities]
        if not serving:
            return NoCredentialAvailable(f"No credentials configured for {capability.value}",
                                         permanent=True)
        live = [s for s in serving if capability not in s.disabled]
        if not live:
            return NoCredentialAvailable(f"All {capability.value} credentials are disabled",
                                         permanent=True)

        waits = []
        for state in live:
            ready_at = max(state.cooldown_until.get(capability, 0.0),
                           state.locked_until if state.locked_by else 0.0)
            cred = state.credential
            if cred.per_minute_limit is not None and state.requests_this_minute >= cred.per_minute_limit:
                ready_at = max(ready_at, state.minute_started_at + 60.0)
            if self._remaining_daily(state) <= 0:
                ready_at = max(ready_at, (math.floor(now / 86400.0) + 1) * 86400.0)
            waits.append(max(0.0, ready_at - now))
        return NoCredentialAvailable(
            f"All {capability.value} credentials are cooling down, locked or over quota",
            retry_after_seconds=min(waits),
        )
