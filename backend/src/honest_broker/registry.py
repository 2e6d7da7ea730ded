"""Broker registry: routes lookups and owns broker configuration."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from pydantic import BaseModel

from .cache import LookupCache
from .config import (
    BrokerConfig,
    SURROGATE_ID_TYPES,
    IdType,
    RegistryConfig,
    parse_broker_config,
    save_registry_config,
)
from .date_shift import DateLike, DateShiftEngine, apply_date_shift
from .deadline import Deadline
from .errors import (
    BrokerAlreadyExistsError,
    BrokerDisabledError,
    BrokerNotFoundError,
    ConfigurationError,
    ConfirmationRequiredError,
    ConflictError,
    HonestBrokerError,
    InvalidInputError,
    LookupTimeoutError,
)
from .models import CrosswalkEntry
from .naming import NamingSchemeEngine, require_identifier
from .remote import RemoteBrokerClient
from .sandbox import ScriptSandbox
from .store import CrosswalkStore
from .uid_hash import UidHasher


logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
DEFAULT_UID_TYPE = "study_uid"

RemoteFactory = Callable[[BrokerConfig], RemoteBrokerClient]


class BrokerSummary(BaseModel):
    name: str
    description: str
    enabled: bool
    broker_type: str
    naming_scheme: str
    mapping_count: int
    cache_enabled: bool
    date_shift_enabled: bool
    hash_uids_enabled: bool


class ReverseLookupResult(BaseModel):
    broker_name: str
    id_in: str
    id_out: str
    id_type: Optional[str]
    source: str


class ConnectionTestResult(BaseModel):
    broker_name: str
    success: bool
    message: str
    error: Optional[str] = None


class DeidentifiedPatient(BaseModel):
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    date_shift_days: Optional[int] = None


@dataclass(frozen=True)
class _BrokerRuntime:
    config: BrokerConfig
    cache: Optional[LookupCache]
    remote: Optional[RemoteBrokerClient]
    # Stable across updates, new for every create; guards commits against a delete.
    incarnation: int


@dataclass(frozen=True)
class _RegistryState:
    config: RegistryConfig
    runtimes: dict[str, _BrokerRuntime]


@contextmanager
def _hold(lock: threading.Lock, deadline: Deadline, what: str) -> Iterator[None]:
    remaining = deadline.remaining()
    if not lock.acquire(timeout=-1 if remaining is None else remaining):
        raise LookupTimeoutError(f"Timed out waiting for {what}")
    try:
        yield
    finally:
        lock.release()


def _id_type_value(id_type: Union[str, IdType]) -> str:
    value = id_type.value if isinstance(id_type, IdType) else str(id_type or "").strip()
    if not value:
        raise InvalidInputError("Identifier type must not be empty")
    return value


class BrokerRegistry:
    """Owns every configured broker and serves ``lookup`` for all of them.

    Configuration is an immutable ``RegistryConfig`` swapped atomically on each
    administrative change, so in-flight lookups always see one consistent
    version. New mappings are generated under a striped per-key lock and
    committed under the broker's assignment lock; local generation holds the
    assignment lock throughout because the sequential counter and collision
    suffixes read the store. Locks are always taken in that order and released
    on timeout.
    """

    def __init__(
        self,
        store: CrosswalkStore,
        config: Optional[RegistryConfig] = None,
        *,
        sandbox: Optional[ScriptSandbox] = None,
        uid_hash_key: Optional[str] = None,
        default_timeout: Optional[float] = 30.0,
        config_path: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
        remote_factory: Optional[RemoteFactory] = None,
    ) -> None:
        self.store = store
        self.sandbox = sandbox if sandbox is not None else ScriptSandbox()
        self.naming = NamingSchemeEngine(store, self.sandbox)
        self.date_shift = DateShiftEngine(store)
        self.uid_hasher = UidHasher(uid_hash_key, store) if uid_hash_key else None
        self.default_timeout = default_timeout
        self.config_path = config_path
        self._clock = clock
        self._remote_factory = remote_factory or self._default_remote
        self._admin_lock = threading.RLock()
        self._key_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._broker_locks: dict[str, threading.Lock] = {}
        self._broker_locks_guard = threading.Lock()
        self._incarnations = itertools.count(1)
        self._state = self._build_state(config or RegistryConfig(), previous=None)

    # ------------------------------------------------------------ configuration

    def _default_remote(self, broker: BrokerConfig) -> RemoteBrokerClient:
        assert broker.remote is not None
        return RemoteBrokerClient(broker.name, broker.remote, clock=self._clock)

    def _build_runtime(self, broker: BrokerConfig, incarnation: int) -> _BrokerRuntime:
        cache = None
        if broker.cache.enabled:
            cache = LookupCache(max_size=broker.cache.max_size, ttl_seconds=broker.cache.ttl_seconds, clock=self._clock)
        remote = self._remote_factory(broker) if broker.is_remote else None
        return _BrokerRuntime(config=broker, cache=cache, remote=remote, incarnation=incarnation)

    def _build_state(self, config: RegistryConfig, previous: Optional[_RegistryState]) -> _RegistryState:
        runtimes: dict[str, _BrokerRuntime] = {}
        for broker in config.brokers:
            existing = previous.runtimes.get(broker.name) if previous else None
            if existing is not None and existing.config == broker:
                runtimes[broker.name] = existing
            elif existing is not None:
                runtimes[broker.name] = self._build_runtime(broker, existing.incarnation)
            else:
                runtimes[broker.name] = self._build_runtime(broker, next(self._incarnations))
        return _RegistryState(config=config, runtimes=runtimes)

    def _swap(self, config: RegistryConfig) -> None:
        with self._admin_lock:
            self._state = self._build_state(config, self._state)
            if self.config_path is not None:
                save_registry_config(config, self.config_path)
        logger.info("Broker configuration version %d active (%d broker(s))", config.version, len(config.brokers))

    @property
    def config(self) -> RegistryConfig:
        return self._state.config

    def replace_config(self, config: RegistryConfig) -> None:
        with self._admin_lock:
            current = self._state.config
            if config.version <= current.version:
                config = config.model_copy(update={"version": current.version + 1})
            self._swap(config)

    def create_broker(self, broker: Union[BrokerConfig, dict]) -> BrokerConfig:
        if isinstance(broker, dict):
            broker = parse_broker_config(broker)
        with self._admin_lock:
            if self._state.config.get(broker.name) is not None:
                raise BrokerAlreadyExistsError(broker.name)
            self._swap(self._state.config.with_broker(broker))
        logger.info("Created broker %s (%s)", broker.name, broker.broker_type.value)
        return broker

    def update_broker(self, name: str, broker: Union[BrokerConfig, dict]) -> BrokerConfig:
        if isinstance(broker, dict):
            broker = parse_broker_config({**broker, "name": broker.get("name", name)})
        if broker.name != name:
            raise ConfigurationError("Broker name cannot be changed")
        with self._admin_lock:
            if self._state.config.get(name) is None:
                raise BrokerNotFoundError(name)
            self._swap(self._state.config.with_broker(broker))
        logger.info("Updated broker %s", name)
        return broker

    def delete_broker(self, name: str, *, confirm: bool = False) -> int:
        """Remove a broker and irreversibly delete all of its crosswalk entries.

        The broker's assignment lock is held across the removal, so a lookup
        that is committing a new mapping either lands before the delete (and is
        deleted with the rest) or finds the broker gone and writes nothing.
        """

        if not confirm:
            raise ConfirmationRequiredError(
                f"Deleting broker '{name}' permanently deletes its crosswalk; pass confirm=true"
            )
        with self._admin_lock, self._broker_lock(name):
            if self._state.config.get(name) is None:
                raise BrokerNotFoundError(name)
            self._swap(self._state.config.without_broker(name))
            deleted = self.store.delete_broker(name)
        return deleted

    def purge(self, name: str, id_type: Optional[str] = None, *, confirm: bool = False) -> int:
        if not confirm:
            raise ConfirmationRequiredError(f"Purging broker '{name}' deletes mappings; pass confirm=true")
        runtime = self._runtime(name, require_enabled=False)
        deleted = self.store.purge(name, id_type)
        if runtime.cache is not None:
            runtime.cache.clear()
        return deleted

    # ------------------------------------------------------------------ lookups

    def _runtime(self, name: str, *, require_enabled: bool = True) -> _BrokerRuntime:
        runtime = self._state.runtimes.get(name)
        if runtime is None:
            raise BrokerNotFoundError(name)
        if require_enabled and not runtime.config.enabled:
            raise BrokerDisabledError(name)
        return runtime

    def _deadline(self, timeout: Optional[float]) -> Deadline:
        return Deadline.after(timeout if timeout is not None else self.default_timeout)

    def _key_lock(self, key: tuple[str, str, str]) -> threading.Lock:
        return self._key_locks[hash(key) % LOCK_STRIPES]

    def _broker_lock(self, name: str) -> threading.Lock:
        with self._broker_locks_guard:
            return self._broker_locks.setdefault(name, threading.Lock())

    def lookup(
        self,
        broker_name: str,
        id_in: str,
        id_type: Union[str, IdType] = IdType.PATIENT_ID,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Return the surrogate for ``id_in``, creating and recording it on first use."""

        require_identifier(id_in)
        id_type = _id_type_value(id_type)
        deadline = self._deadline(timeout)
        runtime = self._runtime(broker_name)
        config = runtime.config
        key = (config.name, id_type, id_in)

        if runtime.cache is not None:
            cached = runtime.cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for broker %s (%s)", config.name, id_type)
                return cached

        stored = self.store.get(config.name, id_type, id_in)
        if stored is not None:
            logger.debug("Store hit for broker %s (%s)", config.name, id_type)
            if runtime.cache is not None:
                runtime.cache.put(key, stored)
                self.store.touch(config.name, id_type, id_in)
            return stored

        deadline.check("lookup")
        with _hold(self._key_lock(key), deadline, f"the generation lock of broker '{config.name}'"):
            stored = self.store.get(config.name, id_type, id_in)
            if stored is None:
                stored = self._assign(runtime, id_type, id_in, deadline)

        if runtime.cache is not None:
            runtime.cache.put(key, stored)
        return stored

    def _assign(self, runtime: _BrokerRuntime, id_type: str, id_in: str, deadline: Deadline) -> str:
        config = runtime.config
        assignment_lock = f"the assignment lock of broker '{config.name}'"
        if runtime.remote is not None:
            id_out = runtime.remote.lookup(id_in, id_type, deadline=deadline)
            deadline.check("remote lookup")
            with _hold(self._broker_lock(config.name), deadline, assignment_lock):
                return self._commit(runtime, id_type, id_in, id_out, "remote", deadline)

        with _hold(self._broker_lock(config.name), deadline, assignment_lock):
            # Broker-wide count: the k-th distinct identifier of any surrogate type gets k.
            mapping_count = self.store.count(config.name, id_types=SURROGATE_ID_TYPES, timeout=deadline.remaining())
            id_out = self.naming.generate(config, id_in, id_type, mapping_count, deadline=deadline)
            deadline.check("surrogate generation")
            return self._commit(runtime, id_type, id_in, id_out, config.naming_scheme.value, deadline)

    def _commit(
        self, runtime: _BrokerRuntime, id_type: str, id_in: str, id_out: str, source: str, deadline: Deadline
    ) -> str:
        """Record a new mapping; the caller holds the broker's assignment lock."""

        name = runtime.config.name
        current = self._state.runtimes.get(name)
        if current is None or current.incarnation != runtime.incarnation:
            raise BrokerNotFoundError(name)
        try:
            self.store.put(name, id_type, id_in, id_out, details=f"source={source}", timeout=deadline.remaining())
        except ConflictError as exc:
            logger.warning("Mapping for broker %s (%s) was assigned concurrently; keeping stored value", name, id_type)
            return exc.existing
        logger.info("Created %s mapping for broker %s via %s", id_type, name, source)
        return id_out

    def reverse_lookup(
        self,
        broker_name: str,
        id_out: str,
        id_type: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Optional[ReverseLookupResult]:
        """Find the original value for a surrogate: store first, then the remote API."""

        if not id_out or not id_out.strip():
            raise InvalidInputError("Surrogate value must not be empty")
        runtime = self._runtime(broker_name, require_enabled=False)
        entry = self.store.reverse_lookup(broker_name, id_out, id_type)
        if entry is not None:
            return ReverseLookupResult(
                broker_name=broker_name, id_in=entry.id_in, id_out=entry.id_out, id_type=entry.id_type, source="store"
            )
        if runtime.remote is None or not runtime.config.enabled:
            return None
        id_in = runtime.remote.reverse_lookup(id_out, id_type, deadline=self._deadline(timeout))
        if id_in is None:
            return None
        self.store.log_operation(broker_name, "reverse_lookup", id_in=id_in, id_out=id_out, id_type=id_type, details="remote")
        return ReverseLookupResult(broker_name=broker_name, id_in=id_in, id_out=id_out, id_type=id_type, source="remote")

    def deidentify(
        self,
        broker_name: str,
        *,
        patient_id: Optional[str] = None,
        patient_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DeidentifiedPatient:
        """Surrogates for a patient's identifiers, honouring the broker's replace flags."""

        config = self._runtime(broker_name).config
        result = DeidentifiedPatient(patient_id=patient_id, patient_name=patient_name)
        if patient_id and config.replace_patient_id:
            result.patient_id = self.lookup(broker_name, patient_id, IdType.PATIENT_ID, timeout=timeout)
        if patient_name and config.replace_patient_name:
            result.patient_name = self.lookup(broker_name, patient_name, IdType.PATIENT_NAME, timeout=timeout)
        if patient_id and config.date_shift.enabled:
            result.date_shift_days = self.get_date_shift(broker_name, patient_id)
        return result

    # ---------------------------------------------------------- dates and UIDs

    def get_date_shift(self, broker_name: str, patient_key: str) -> int:
        config = self._runtime(broker_name).config
        if not config.date_shift.enabled:
            return 0
        return self.date_shift.offset_for(config.name, patient_key, config.date_shift)

    def shift_date(self, broker_name: str, patient_key: str, value: Optional[DateLike]) -> Optional[DateLike]:
        return apply_date_shift(value, self.get_date_shift(broker_name, patient_key))

    def hash_uid(self, broker_name: str, uid: str, uid_type: str = DEFAULT_UID_TYPE) -> str:
        config = self._runtime(broker_name).config
        if self.uid_hasher is None:
            raise ConfigurationError("UID hashing requires UID_HASH_KEY to be configured")
        if config.hash_uids_enabled:
            return self.uid_hasher.hash_and_record(config.name, uid, uid_type)
        return self.uid_hasher.hash(uid)

    # -------------------------------------------------------------- inspection

    def _summary(self, runtime: _BrokerRuntime) -> BrokerSummary:
        config = runtime.config
        return BrokerSummary(
            name=config.name,
            description=config.description,
            enabled=config.enabled,
            broker_type=config.broker_type.value,
            naming_scheme=config.naming_scheme.value,
            mapping_count=self.store.count(config.name),
            cache_enabled=runtime.cache is not None,
            date_shift_enabled=config.date_shift.enabled,
            hash_uids_enabled=config.hash_uids_enabled,
        )

    def get_broker(self, name: str) -> BrokerSummary:
        return self._summary(self._runtime(name, require_enabled=False))

    def get_broker_config(self, name: str) -> BrokerConfig:
        return self._runtime(name, require_enabled=False).config

    def list_brokers(self) -> list[BrokerSummary]:
        state = self._state
        return [self._summary(state.runtimes[name]) for name in sorted(state.runtimes)]

    def list_crosswalk(
        self, name: str, limit: int = 100, offset: int = 0, id_type: Optional[str] = None
    ) -> list[CrosswalkEntry]:
        self._runtime(name, require_enabled=False)
        return self.store.list_entries(name, limit=limit, offset=offset, id_type=id_type)

    def export_crosswalk(self, name: Optional[str] = None) -> Iterator[str]:
        if name is not None:
            self._runtime(name, require_enabled=False)
        return self.store.export(name)

    def crosswalk_stats(self) -> dict:
        by_type = self.store.counts_by_type()
        return {
            "total_mappings": self.store.total_count(),
            "total_log_entries": self.store.log_count(),
            "brokers": {
                name: {"total": sum(counts.values()), "by_type": counts} for name, counts in sorted(by_type.items())
            },
        }

    # ------------------------------------------------------------ maintenance

    def clear_cache(self, name: Optional[str] = None) -> int:
        """Drop cached lookups (and remote tokens) for one broker or all of them."""

        state = self._state
        runtimes = [self._runtime(name, require_enabled=False)] if name is not None else list(state.runtimes.values())
        cleared = 0
        for runtime in runtimes:
            if runtime.cache is not None:
                runtime.cache.clear()
                cleared += 1
            if runtime.remote is not None:
                runtime.remote.invalidate_token()
        logger.info("Cleared %d lookup cache(s)", cleared)
        return cleared

    def test_connection(self, name: str, *, timeout: Optional[float] = None) -> ConnectionTestResult:
        runtime = self._runtime(name, require_enabled=False)
        if runtime.remote is None:
            return ConnectionTestResult(broker_name=name, success=True, message="Local broker is always available")
        try:
            runtime.remote.test_connection(deadline=self._deadline(timeout))
        except HonestBrokerError as exc:
            logger.error("Connection test for broker %s failed: %s", name, exc)
            return ConnectionTestResult(broker_name=name, success=False, message=str(exc), error=exc.kind)
        return ConnectionTestResult(broker_name=name, success=True, message="Authenticated with the token service")

    def close(self) -> None:
        self.sandbox.close()
