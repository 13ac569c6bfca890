"""Composition root wiring the store, services and scope adapters together.

Nothing here is a module-level singleton: every application (and every
test) builds its own ``QuotaGate`` with its own store handle.
"""

import time
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from quotagate.app.adapters import (
    ApiKeyAdapter,
    GroupAdapter,
    ScopeAdapter,
    ScopeConfigProvider,
    UsageCommit,
    UserAdapter,
)
from quotagate.app.core.config import Settings, settings as default_settings
from quotagate.app.core.logging import get_logger
from quotagate.app.core.observability import AdmissionObserver
from quotagate.app.exceptions import ConfigurationError
from quotagate.app.services.dispatcher import BackgroundDispatcher, UsageRecord, UsageSink
from quotagate.app.services.escalation import EscalationEngine, QuotaWarning, WarningNotifier
from quotagate.app.services.failsafe import FailOpenPolicy
from quotagate.app.services.quota_tracker import QuotaTracker
from quotagate.app.services.window_limiter import WindowLimiter
from quotagate.app.store import CounterStore, InMemoryCounterStore, RedisCounterStore

logger = get_logger(__name__)


def build_store(config: Settings, clock: Callable[[], float] = time.time) -> CounterStore:
    """Redis store when enabled, otherwise a process-local store."""
    if config.redis_enabled:
        return RedisCounterStore(
            redis_url=config.redis_url, socket_timeout=config.store_timeout_seconds
        )
    logger.warning(
        "Redis disabled: counters are local to this process and not shared "
        "between instances"
    )
    return InMemoryCounterStore(clock=clock)


class QuotaGate:
    """Admission control for API keys, groups and users.

    Example:
        gate = QuotaGate(config_provider=provider, notifier=notifier)
        gate.start()
        decision = await gate.api_keys.check("key-1", UsageEstimate(tokens=500))
        if decision.allowed:
            ...
            gate.api_keys.record_usage("key-1", UsageAmounts(tokens=420), decision)

        # On application shutdown:
        await gate.close()
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        config: Optional[Settings] = None,
        observer: Optional[AdmissionObserver] = None,
        config_provider: Optional[ScopeConfigProvider] = None,
        notifier: Optional[WarningNotifier] = None,
        sink: Optional[UsageSink] = None,
        clock: Callable[[], float] = time.time,
        db_engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.settings = config or default_settings
        self.observer = observer or AdmissionObserver()
        self.store = store or build_store(self.settings, clock)
        self._db_engine = db_engine

        self.policy = FailOpenPolicy(
            self.observer,
            timeout_seconds=self.settings.store_timeout_seconds,
            fail_mode=self.settings.store_fail_mode,
        )
        self.dispatcher = BackgroundDispatcher(
            self.observer,
            max_size=self.settings.background_queue_size,
            max_retries=self.settings.background_max_retries,
            retry_delay=self.settings.background_retry_delay,
            dead_letter_path=self.settings.dead_letter_path,
        )
        self.escalation = EscalationEngine(self.dispatcher if notifier else None)
        self.limiter = WindowLimiter(self.store, self.policy, clock=clock)
        self.tracker = QuotaTracker(
            self.store,
            self.policy,
            escalation=self.escalation,
            observer=self.observer,
            clock=clock,
        )

        adapter_args = dict(
            limiter=self.limiter,
            tracker=self.tracker,
            dispatcher=self.dispatcher,
            config_provider=config_provider,
            config=self.settings,
            persist_usage=sink is not None,
            clock=clock,
        )
        self.api_keys = ApiKeyAdapter(**adapter_args)
        self.groups = GroupAdapter(**adapter_args)
        self.users = UserAdapter(**adapter_args)
        self._adapters: Dict[str, ScopeAdapter] = {
            adapter.scope_type: adapter
            for adapter in (self.api_keys, self.groups, self.users)
        }

        self.dispatcher.register(UsageCommit, self._commit)
        if notifier is not None:
            self.dispatcher.register(QuotaWarning, notifier.deliver)
        if sink is not None:
            self.dispatcher.register(UsageRecord, sink.persist)

    @classmethod
    async def from_settings(
        cls,
        config: Optional[Settings] = None,
        config_provider: Optional[ScopeConfigProvider] = None,
        notifier: Optional[WarningNotifier] = None,
    ) -> "QuotaGate":
        """Build a gate from settings, including durable persistence if enabled."""
        config = config or default_settings
        sink = None
        db_engine = None
        if config.persistence_enabled:
            from quotagate.app.db.async_session import (
                build_async_engine,
                build_session_maker,
                init_usage_schema,
            )
            from quotagate.app.db.sink import SqlUsageSink

            db_engine = build_async_engine(config.database_url)
            await init_usage_schema(db_engine)
            sink = SqlUsageSink(build_session_maker(db_engine))

        return cls(
            config=config,
            config_provider=config_provider,
            notifier=notifier,
            sink=sink,
            db_engine=db_engine,
        )

    def adapter(self, scope_type: str) -> ScopeAdapter:
        try:
            return self._adapters[scope_type]
        except KeyError:
            raise ConfigurationError(f"Unknown scope type: {scope_type}") from None

    async def _commit(self, commit: UsageCommit) -> None:
        await self.adapter(commit.scope_type).commit_usage(commit)

    def start(self) -> None:
        """Start background workers.

        This should be called during application startup.
        """
        self.dispatcher.start()

    async def close(self) -> None:
        """Drain background work and release connections."""
        await self.dispatcher.shutdown()
        await self.store.close()
        if self._db_engine is not None:
            await self._db_engine.dispose()
        logger.info("QuotaGate closed")
