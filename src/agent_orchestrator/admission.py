"""Admission control for concurrent workers.

Bounds in-flight workers at three scopes: global, per repository and per
user. Check-and-increment happens inside one lock-held, non-suspending
critical section, so concurrent callers can never over-admit.
"""

from dataclasses import dataclass, field
from enum import Enum
import threading

import structlog

logger = structlog.get_logger()


class AdmissionScope(str, Enum):
    GLOBAL = "global"
    REPO = "repo"
    USER = "user"


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of an admission attempt."""

    admitted: bool
    exhausted_scope: AdmissionScope | None = None
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class ScopeUsage:
    current: int
    max: int


@dataclass
class AdmissionStatus:
    """Snapshot of current in-flight counts against ceilings."""

    global_scope: ScopeUsage
    by_repo: dict[str, ScopeUsage] = field(default_factory=dict)
    by_user: dict[str, ScopeUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class _Admission:
    repo_id: str | None
    user_id: str | None


class AdmissionController:
    """Gatekeeps how many workers may run concurrently."""

    def __init__(self, max_global: int, max_per_repo: int, max_per_user: int):
        self.max_global = max_global
        self.max_per_repo = max_per_repo
        self.max_per_user = max_per_user

        self._admitted: dict[str, _Admission] = {}
        self._by_repo: dict[str, set[str]] = {}
        self._by_user: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def try_admit(
        self,
        worker_id: str,
        repo_id: str | None = None,
        user_id: str | None = None,
    ) -> AdmissionResult:
        """Admit a worker if every applicable scope is below its ceiling.

        Never raises. Re-admitting an already admitted worker is a no-op that
        reports success.
        """
        with self._lock:
            if worker_id in self._admitted:
                return AdmissionResult(admitted=True)

            refusal = self._check(repo_id, user_id)
            if refusal is not None:
                logger.info(
                    "admission_refused",
                    worker_id=worker_id,
                    scope=refusal.exhausted_scope.value if refusal.exhausted_scope else None,
                    reason=refusal.reason,
                )
                return refusal

            self._admitted[worker_id] = _Admission(repo_id=repo_id, user_id=user_id)
            if repo_id is not None:
                self._by_repo.setdefault(repo_id, set()).add(worker_id)
            if user_id is not None:
                self._by_user.setdefault(user_id, set()).add(worker_id)
            in_flight = len(self._admitted)

        logger.info(
            "worker_admitted",
            worker_id=worker_id,
            repo_id=repo_id,
            user_id=user_id,
            in_flight=in_flight,
        )
        return AdmissionResult(admitted=True)

    def _check(self, repo_id: str | None, user_id: str | None) -> AdmissionResult | None:
        if len(self._admitted) >= self.max_global:
            return AdmissionResult(
                admitted=False,
                exhausted_scope=AdmissionScope.GLOBAL,
                reason=f"Global concurrent limit reached ({self.max_global})",
            )

        if repo_id is not None and len(self._by_repo.get(repo_id, ())) >= self.max_per_repo:
            return AdmissionResult(
                admitted=False,
                exhausted_scope=AdmissionScope.REPO,
                reason=f"Per-repository limit reached for {repo_id} ({self.max_per_repo})",
            )

        if user_id is not None and len(self._by_user.get(user_id, ())) >= self.max_per_user:
            return AdmissionResult(
                admitted=False,
                exhausted_scope=AdmissionScope.USER,
                reason=f"Per-user limit reached for {user_id} ({self.max_per_user})",
            )

        return None

    def release(self, worker_id: str) -> None:
        """Decrement every scope the worker was counted against."""
        with self._lock:
            admission = self._admitted.pop(worker_id, None)
            if admission is None:
                logger.debug("release_unknown_worker", worker_id=worker_id)
                return

            if admission.repo_id is not None:
                self._discard(self._by_repo, admission.repo_id, worker_id)
            if admission.user_id is not None:
                self._discard(self._by_user, admission.user_id, worker_id)
            in_flight = len(self._admitted)

        logger.info("worker_released", worker_id=worker_id, in_flight=in_flight)

    @staticmethod
    def _discard(index: dict[str, set[str]], key: str, worker_id: str) -> None:
        members = index.get(key)
        if members is None:
            return
        members.discard(worker_id)
        if not members:
            del index[key]

    def is_admitted(self, worker_id: str) -> bool:
        with self._lock:
            return worker_id in self._admitted

    def get_status(self) -> AdmissionStatus:
        with self._lock:
            return AdmissionStatus(
                global_scope=ScopeUsage(current=len(self._admitted), max=self.max_global),
                by_repo={
                    repo_id: ScopeUsage(current=len(workers), max=self.max_per_repo)
                    for repo_id, workers in self._by_repo.items()
                },
                by_user={
                    user_id: ScopeUsage(current=len(workers), max=self.max_per_user)
                    for user_id, workers in self._by_user.items()
                },
            )

    def update_limits(
        self,
        max_global: int | None = None,
        max_per_repo: int | None = None,
        max_per_user: int | None = None,
    ) -> None:
        """Change ceilings at runtime. Already admitted workers are kept."""
        for name, value in (
            ("max_global", max_global),
            ("max_per_repo", max_per_repo),
            ("max_per_user", max_per_user),
        ):
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")

        with self._lock:
            if max_global is not None:
                self.max_global = max_global
            if max_per_repo is not None:
                self.max_per_repo = max_per_repo
            if max_per_user is not None:
                self.max_per_user = max_per_user

        logger.info(
            "admission_limits_updated",
            max_global=self.max_global,
            max_per_repo=self.max_per_repo,
            max_per_user=self.max_per_user,
        )
