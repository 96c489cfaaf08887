"""Lifecycle/cleanup manager for provisioned sandboxes.

Teardown runs synchronously when a task finishes and again from the
periodic reaper for anything whose ``expires_at`` has passed. A lease on
the sandbox row (``teardown_claimed_at``) keeps the two paths from killing
the same sandbox concurrently, and ``torn_down_at`` is written exactly once.
"""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import or_, update
from sqlmodel import select

from sandbox_agents.core.clock import utcnow
from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.database import get_session
from sandbox_agents.core.errors import TeardownFailed
from sandbox_agents.models import SandboxRecord
from sandbox_agents.services.sandbox import SandboxService
from sandbox_agents.services.task import TaskService

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Decides when sandboxes are torn down and makes sure they are."""

    def __init__(self, config: Settings = settings):
        self.config = config

    def register(
        self, task_id: UUID | None, sandbox_id: str, keep_alive: bool, expires_at
    ) -> SandboxRecord:
        """Record a newly provisioned sandbox and its hard expiry."""
        with get_session() as session:
            record = SandboxRecord(
                sandbox_id=sandbox_id,
                task_id=task_id,
                keep_alive=keep_alive,
                expires_at=expires_at,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.info(f"Registered sandbox {sandbox_id} for task {task_id}")
        return record

    def get_record(self, sandbox_id: str) -> SandboxRecord | None:
        with get_session() as session:
            statement = select(SandboxRecord).where(SandboxRecord.sandbox_id == sandbox_id)
            return session.execute(statement).scalar_one_or_none()

    def find_live(self, sandbox_id: str | None, task_id: UUID) -> SandboxRecord | None:
        """The sandbox if it is still up, unexpired and owned by ``task_id``."""
        if not sandbox_id:
            return None
        with get_session() as session:
            statement = select(SandboxRecord).where(
                SandboxRecord.sandbox_id == sandbox_id,
                SandboxRecord.task_id == task_id,
                SandboxRecord.torn_down_at.is_(None),
                SandboxRecord.teardown_claimed_at.is_(None),
                SandboxRecord.expires_at > utcnow(),
            )
            return session.execute(statement).scalar_one_or_none()

    def claim(
        self, sandbox_id: str, from_task_id: UUID, to_task_id: UUID, max_duration: int
    ) -> bool:
        """Transfer a live kept-alive sandbox to a follow-up task.

        Resets the expiry. Only one follow-up can win the claim.
        """
        now = utcnow()
        with get_session() as session:
            result = session.execute(
                update(SandboxRecord)
                .where(
                    SandboxRecord.sandbox_id == sandbox_id,
                    SandboxRecord.task_id == from_task_id,
                    SandboxRecord.torn_down_at.is_(None),
                    SandboxRecord.teardown_claimed_at.is_(None),
                    SandboxRecord.expires_at > now,
                )
                .values(task_id=to_task_id, expires_at=now + timedelta(minutes=max_duration))
            )
            claimed = result.rowcount == 1
        logger.info(f"Claim of sandbox {sandbox_id} by task {to_task_id}: {claimed}")
        return claimed

    def schedule(
        self, sandbox_id: str, keep_alive: bool, max_duration: int, sandbox=None
    ) -> None:
        """Tear down now, or keep the sandbox for ``max_duration`` minutes of idle time."""
        now = utcnow()
        expires_at = now + timedelta(minutes=max_duration) if keep_alive else now
        with get_session() as session:
            session.execute(
                update(SandboxRecord)
                .where(
                    SandboxRecord.sandbox_id == sandbox_id,
                    SandboxRecord.torn_down_at.is_(None),
                )
                .values(expires_at=expires_at, keep_alive=keep_alive)
            )

        if not keep_alive:
            try:
                self.teardown(sandbox_id)
            except TeardownFailed as e:
                logger.error(f"{e}; the reaper will retry")
            return

        if sandbox is not None:
            try:
                sandbox.set_timeout(max_duration * 60)
            except Exception as e:
                logger.warning(f"Could not extend timeout of sandbox {sandbox_id}: {e}")
        logger.info(f"Keeping sandbox {sandbox_id} alive until {expires_at.isoformat()}")

    def release_task_sandboxes(self, task_id: UUID) -> None:
        """Expire and tear down every live sandbox a task owns."""
        with get_session() as session:
            statement = select(SandboxRecord.sandbox_id).where(
                SandboxRecord.task_id == task_id,
                SandboxRecord.torn_down_at.is_(None),
            )
            sandbox_ids = list(session.execute(statement).scalars().all())
        for sandbox_id in sandbox_ids:
            self.schedule(sandbox_id, keep_alive=False, max_duration=0)

    def teardown(self, sandbox_id: str) -> bool:
        """Kill a sandbox and record it, at most once.

        Returns False when another caller holds the lease or the sandbox is
        already torn down.

        Raises:
            TeardownFailed: If the kill call failed; the lease is released
        """
        now = utcnow()
        lease_cutoff = now - timedelta(seconds=self.config.teardown_lease)
        with get_session() as session:
            result = session.execute(
                update(SandboxRecord)
                .where(
                    SandboxRecord.sandbox_id == sandbox_id,
                    SandboxRecord.torn_down_at.is_(None),
                    or_(
                        SandboxRecord.teardown_claimed_at.is_(None),
                        SandboxRecord.teardown_claimed_at < lease_cutoff,
                    ),
                )
                .values(teardown_claimed_at=now)
            )
            if result.rowcount != 1:
                return False

        try:
            SandboxService.kill_sandbox(sandbox_id, config=self.config)
        except Exception as e:
            with get_session() as session:
                session.execute(
                    update(SandboxRecord)
                    .where(SandboxRecord.sandbox_id == sandbox_id)
                    .values(
                        teardown_claimed_at=None,
                        teardown_attempts=SandboxRecord.teardown_attempts + 1,
                    )
                )
            raise TeardownFailed(f"Teardown of sandbox {sandbox_id} failed: {e}") from e

        with get_session() as session:
            session.execute(
                update(SandboxRecord)
                .where(SandboxRecord.sandbox_id == sandbox_id)
                .values(torn_down_at=utcnow(), teardown_claimed_at=None)
            )
        logger.info(f"Sandbox {sandbox_id} torn down")
        return True

    def reap_expired(self, limit: int = 100) -> int:
        """Tear down every expired sandbox. Returns how many were torn down.

        A task still active on an expired sandbox lost its worker; it is
        failed before the sandbox goes away.
        """
        with get_session() as session:
            statement = (
                select(SandboxRecord)
                .where(
                    SandboxRecord.torn_down_at.is_(None),
                    SandboxRecord.expires_at <= utcnow(),
                )
                .order_by(SandboxRecord.expires_at)
                .limit(limit)
            )
            records = list(session.execute(statement).scalars().all())

        reaped = 0
        for record in records:
            if record.task_id is not None:
                TaskService.fail_if_active(
                    record.task_id,
                    "The sandbox expired before the task finished",
                    error_code="execution_timeout",
                )
            try:
                if self.teardown(record.sandbox_id):
                    reaped += 1
            except TeardownFailed as e:
                logger.error(str(e))

        if records:
            logger.info(f"Reaper tore down {reaped} of {len(records)} expired sandboxes")
        return reaped
