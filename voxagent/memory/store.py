from __future__ import annotations

import collections
from datetime import datetime, timedelta, timezone
from typing import Deque, Protocol, Sequence
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from voxagent.memory import models
from voxagent.orchestrator.clock import CLOCK, Clock
from voxagent.orchestrator.events import ConversationTurn, Role
from voxagent.orchestrator.policies import ContextConfig
from voxagent.telemetry.logging import get_logger


class TurnRepository(Protocol):
    async def init(self) -> None: ...

    async def append(self, session_id: str, turn: ConversationTurn) -> None: ...

    async def recent(self, limit: int, max_age: timedelta) -> list[ConversationTurn]: ...

    async def clear(self, session_id: str | None = None) -> None: ...

    async def aclose(self) -> None: ...


class SqlTurnRepository:
    """Write-through turn log on SQLAlchemy async (Postgres in production, SQLite in tests)."""

    def __init__(self, dsn: str, max_pool_size: int = 10) -> None:
        engine_kwargs: dict[str, object] = {"echo": False}
        if not dsn.startswith("sqlite"):
            engine_kwargs["pool_size"] = max_pool_size
        self._engine: AsyncEngine = create_async_engine(dsn, **engine_kwargs)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self._known_sessions: set[str] = set()
        self._logger = get_logger(__name__)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)

    async def append(self, session_id: str, turn: ConversationTurn) -> None:
        async with self._session_factory() as session:
            if session_id not in self._known_sessions:
                if await session.get(models.Session, session_id) is None:
                    session.add(models.Session(id=session_id, session_metadata={}))
                self._known_sessions.add(session_id)
            session.add(
                models.Turn(
                    turn_id=turn.id,
                    session_id=session_id,
                    role=turn.role,
                    content=turn.content,
                    ts=turn.timestamp.astimezone(timezone.utc),
                    turn_metadata=dict(turn.metadata),
                )
            )
            await session.commit()

    async def recent(self, limit: int, max_age: timedelta) -> list[ConversationTurn]:
        cutoff = datetime.now(timezone.utc) - max_age
        async with self._session_factory() as session:
            rows = (
                await session.execute(select(models.Turn).order_by(models.Turn.id.desc()).limit(limit))
            ).scalars()
            turns: list[ConversationTurn] = []
            for row in rows:
                ts = row.ts if row.ts.tzinfo else row.ts.replace(tzinfo=timezone.utc)
                if ts < cutoff:
                    continue
                turns.append(
                    ConversationTurn(
                        role=row.role,  # type: ignore[arg-type]
                        content=row.content,
                        timestamp=ts,
                        id=row.turn_id,
                        metadata=dict(row.turn_metadata or {}),
                    )
                )
        turns.reverse()
        return turns

    async def clear(self, session_id: str | None = None) -> None:
        async with self._session_factory() as session:
            stmt = delete(models.Turn)
            if session_id is not None:
                stmt = stmt.where(models.Turn.session_id == session_id)
            await session.execute(stmt)
            await session.commit()

    async def aclose(self) -> None:
        await self._engine.dispose()


class NullTurnRepository:
    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    async def init(self) -> None:  # pragma: no cover - trivial
        self._logger.debug("context.repository.null.init")

    async def append(self, session_id: str, turn: ConversationTurn) -> None:
        return None

    async def recent(self, limit: int, max_age: timedelta) -> list[ConversationTurn]:
        return []

    async def clear(self, session_id: str | None = None) -> None:
        return None

    async def aclose(self) -> None:
        return None


class ContextStore:
    """Bounded, ordered conversation history.

    The in-memory sequence is authoritative; the repository is a write-through
    log used only when persistence is enabled. Reads hand out immutable
    snapshots so callers never observe a concurrent append.
    """

    RESTORE_WINDOW = timedelta(hours=24)

    def __init__(
        self,
        config: ContextConfig | None = None,
        repository: TurnRepository | None = None,
        clock: Clock | None = None,
        session_id: str | None = None,
    ) -> None:
        self._config = config or ContextConfig()
        self._repository: TurnRepository = repository if repository is not None else NullTurnRepository()
        self._clock = clock or CLOCK
        self._turns: Deque[ConversationTurn] = collections.deque()
        self._session_id = session_id or f"session-{uuid4().hex[:12]}"
        self._logger = get_logger(__name__)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def max_history(self) -> int:
        return self._config.max_history

    @property
    def persistence_enabled(self) -> bool:
        return self._config.persistence_enabled

    def __len__(self) -> int:
        return len(self._turns)

    async def load(self) -> int:
        if not self.persistence_enabled:
            return 0
        try:
            await self._repository.init()
            restored = await self._repository.recent(self.max_history, self.RESTORE_WINDOW)
        except (SQLAlchemyError, OSError) as exc:
            self._logger.warning("context.load.failed", error=str(exc))
            return 0
        for turn in restored:
            self._push(turn)
        self._logger.info("context.loaded", turns=len(restored), session_id=self._session_id)
        return len(restored)

    async def append(self, role: Role, content: str, metadata: dict | None = None) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content, timestamp=self._clock.now(), metadata=dict(metadata or {}))
        self._push(turn)
        if self.persistence_enabled:
            try:
                await self._repository.append(self._session_id, turn)
            except (SQLAlchemyError, OSError) as exc:
                self._logger.warning("context.persist.failed", turn_id=turn.id, error=str(exc))
        return turn

    def snapshot(self, limit: int | None = None) -> tuple[ConversationTurn, ...]:
        turns = tuple(self._turns)
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else ()
        return turns

    def recent(self, minutes: float = 30.0) -> tuple[ConversationTurn, ...]:
        cutoff = self._clock.now() - timedelta(minutes=minutes)
        return tuple(turn for turn in self._turns if turn.timestamp > cutoff)

    def by_role(self, role: Role, limit: int | None = None) -> tuple[ConversationTurn, ...]:
        turns = tuple(turn for turn in self._turns if turn.role == role)
        return turns[-limit:] if limit else turns

    def search(self, query: str) -> tuple[ConversationTurn, ...]:
        needle = query.lower()
        return tuple(turn for turn in self._turns if needle in turn.content.lower())

    async def clear(self) -> None:
        self._turns.clear()
        if self.persistence_enabled:
            try:
                await self._repository.clear(self._session_id)
            except (SQLAlchemyError, OSError) as exc:
                self._logger.warning("context.clear.failed", error=str(exc))

    def reconfigure(self, config: ContextConfig) -> None:
        self._config = config
        self._evict()

    async def aclose(self) -> None:
        await self._repository.aclose()

    def _push(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)
        self._evict()

    def _evict(self) -> None:
        while len(self._turns) > self._config.max_history:
            evicted = self._turns.popleft()
            self._logger.debug("context.evicted", turn_id=evicted.id)


def as_messages(turns: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    return [{"role": turn.role, "content": turn.content} for turn in turns]


__all__ = [
    "TurnRepository",
    "SqlTurnRepository",
    "NullTurnRepository",
    "ContextStore",
    "as_messages",
]
