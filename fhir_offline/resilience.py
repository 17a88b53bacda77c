"""Offline support for the FHIR resource client.

`OfflineResilientClient` decorates a `ResourceClient` with a two-state
connectivity machine (online/offline). While offline, mutating calls are not
sent; they are appended to an in-memory FIFO queue and the caller receives the
`QueuedOperation` instead of a server result. When connectivity returns the
queue is replayed strictly in order, one operation at a time, stopping at the
first failure. Until the queue is empty, new writes join its back.

Reads are never queued: they are attempted and fail normally when the server
cannot be reached. Reads and idempotent writes are retried with backoff while
online, and every call goes through a circuit breaker.
"""
import asyncio
import contextlib
import enum
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Mapping, Optional, Tuple, TypeVar, Union

import backoff

from fhir_offline.client import DEFAULT_PAGE_SIZE, ENCOUNTER, PATIENT, Payload, ResourceClient
from fhir_offline.config import ClientConfig
from fhir_offline.errors import is_connectivity_error, is_unsent_error
from fhir_offline.retry import BACKOFF_FACTOR, MAX_RETRY_DELAY_MS, CircuitBreaker, CircuitState, with_retry
from fhir_offline.schemas import (
    Bundle,
    EncounterResources,
    MutationMethod,
    QueuedOperation,
    ReplayReport,
    Resource,
    to_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_MS = 30000

# Sending these twice leaves the server in the same state
IDEMPOTENT_METHODS = frozenset({"update", "delete"})

T = TypeVar("T")


class ConnectivityState(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


ConnectivityListener = Callable[[ConnectivityState], None]
ErrorHook = Callable[[BaseException, str], Any]
RetryHook = Callable[[int, BaseException, str], Any]

WriteResult = Union[Resource, Bundle, QueuedOperation, None]


class OfflineResilientClient:
    """
    Resource client wrapper that queues writes while offline and replays them on reconnect.

    Connectivity signals come from the collaborator (`set_offline`, `set_online`)
    or from checking the server (`initialize`, `retry_connection`,
    `poll_connection` and the `start_monitoring` loop). Listeners registered
    with `add_listener` are told about every state change.

    Args:
        client: The ResourceClient that performs the HTTP calls.
        online: Starting connectivity state.
        retry: Retry reads and idempotent writes on transient failures, using
            the client's retry_count and retry_delay_ms.
        enable_circuit_breaker: Route calls through a circuit breaker.
        circuit_breaker: Breaker to use instead of a default one.
        on_error: Called as on_error(error, operation) when a call finally fails.
        on_retry: Called as on_retry(attempt, error, operation) before each retry wait.
        check_interval_ms: Period of the `start_monitoring` connection checks.

    Examples:
        >>> resilient = OfflineResilientClient(ResourceClient(config))
        >>> resilient.set_offline()
        >>> queued = await resilient.create_patient({"resourceType": "Patient"})
        >>> isinstance(queued, QueuedOperation)
        True
        >>> report = await resilient.set_online()  # replays the queued create
    """

    def __init__(
        self,
        client: ResourceClient,
        online: bool = True,
        *,
        retry: bool = True,
        enable_circuit_breaker: bool = True,
        circuit_breaker: Optional[CircuitBreaker] = None,
        on_error: Optional[ErrorHook] = None,
        on_retry: Optional[RetryHook] = None,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
    ):
        self.client = client
        self.retry = retry
        if enable_circuit_breaker:
            self.circuit_breaker: Optional[CircuitBreaker] = circuit_breaker or CircuitBreaker()
        else:
            self.circuit_breaker = None
        self.on_error = on_error
        self.on_retry = on_retry
        self.check_interval_ms = check_interval_ms
        self._state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        self._queue: Deque[QueuedOperation] = deque()
        self._listeners: List[ConnectivityListener] = []
        self._replay_lock = asyncio.Lock()
        self._monitor_task: Optional[asyncio.Task] = None

    # Configuration

    @property
    def config(self) -> ClientConfig:
        return self.client.config

    def update_config(self, **changes: Any) -> ClientConfig:
        """Apply config changes to the wrapped client; see ResourceClient.update_config."""
        return self.client.update_config(**changes)

    # Connectivity state

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state is ConnectivityState.OFFLINE

    @property
    def is_replaying(self) -> bool:
        return self._replay_lock.locked()

    @property
    def pending_operations(self) -> Tuple[QueuedOperation, ...]:
        return tuple(self._queue)

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.remove(listener)

    def _transition(self, state: ConnectivityState) -> bool:
        if state is self._state:
            return False
        self._state = state
        if state is ConnectivityState.OFFLINE:
            logger.warning("FHIR server connectivity lost; writes will be queued")
        else:
            logger.info("FHIR server connectivity restored; %d queued operation(s)", len(self._queue))
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
        return True

    def set_offline(self) -> None:
        """Handle a connectivity-lost signal."""
        self._transition(ConnectivityState.OFFLINE)

    async def set_online(self) -> ReplayReport:
        """Handle a connectivity-restored signal and replay whatever is queued."""
        self._transition(ConnectivityState.ONLINE)
        return await self.replay_queue()

    async def check_connection(self) -> bool:
        """Check the server; never raises and does not change state."""
        return await self.client.check_connection()

    async def _server_reachable(self) -> bool:
        # a successful check is a trial call the breaker can close on
        reachable = await self.client.check_connection()
        if reachable and self.circuit_breaker is not None:
            self.circuit_breaker.record_success()
        return reachable

    async def initialize(self) -> bool:
        """Set the initial state from a connection check. Returns the check result."""
        if await self._server_reachable():
            await self.set_online()
            return True
        self.set_offline()
        return False

    async def retry_connection(self) -> bool:
        """
        Manual "retry connection": check the server with exponential backoff.

        Makes up to config.retry_count checks (at least one), waiting
        config.retry_delay_ms before the second and doubling after that, capped
        at MAX_RETRY_DELAY_MS. On success the wrapper goes online and replays
        the queue; otherwise it ends offline.
        """
        config = self.client.config
        attempts = max(1, config.retry_count)

        def log_failure(details):
            logger.info("Connection check %d/%d failed; retrying in %.2fs", details["tries"], attempts, details["wait"])

        check = backoff.on_predicate(
            backoff.expo,
            max_tries=attempts,
            on_backoff=log_failure,
            jitter=None,
            logger=None,
            base=BACKOFF_FACTOR,
            factor=config.retry_delay_ms / 1000,
            max_value=MAX_RETRY_DELAY_MS / 1000,
        )(self._server_reachable)
        if await check():
            await self.set_online()
            return True
        self.set_offline()
        return False

    async def poll_connection(self) -> bool:
        """
        Check the server once and follow the result.

        Going from offline to reachable switches online and replays the queue;
        going from online to unreachable switches offline. Returns the result.
        """
        reachable = await self._server_reachable()
        if reachable and self.is_offline:
            await self.set_online()
        elif not reachable and self.is_online:
            self.set_offline()
        return reachable

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_ms / 1000)
            await self.poll_connection()

    def start_monitoring(self) -> asyncio.Task:
        """Start checking the server every check_interval_ms. Idempotent while running."""
        if self._monitor_task is None or self._monitor_task.done():
            logger.debug("Monitoring FHIR server every %dms", self.check_interval_ms)
            self._monitor_task = asyncio.ensure_future(self._monitor())
        return self._monitor_task

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # Retry and circuit breaker

    @property
    def circuit_state(self) -> Optional[CircuitState]:
        """State of the circuit breaker, or None when it is disabled."""
        if self.circuit_breaker is None:
            return None
        return self.circuit_breaker.state

    def reset_circuit_breaker(self) -> None:
        if self.circuit_breaker is not None:
            self.circuit_breaker.reset()

    def _run_hook(self, hook: Optional[Callable[..., Any]], *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            logger.exception("Hook %r failed", hook)

    async def _send(self, name: str, call: Callable[[], Awaitable[T]], *, retry: bool) -> T:
        breaker = self.circuit_breaker

        async def attempt() -> T:
            if breaker is None:
                return await call()
            return await breaker.call(call)

        config = self.client.config
        try:
            if retry and self.retry and config.retry_count > 1:
                return await with_retry(
                    attempt,
                    max_attempts=config.retry_count,
                    base_delay_ms=config.retry_delay_ms,
                    on_retry=lambda tries, ex: self._run_hook(self.on_retry, tries, ex, name),
                )
            return await attempt()
        except Exception as ex:
            self._run_hook(self.on_error, ex, name)
            raise

    async def _read(self, method: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        # only retry while the server is believed reachable
        return await self._send(method.__name__, lambda: method(*args, **kwargs), retry=self.is_online)

    # Offline queue

    def _enqueue(self, operation: QueuedOperation) -> QueuedOperation:
        self._queue.append(operation)
        logger.info(
            "Queued %s %s (%d pending)", operation.method, operation.resource_type or "Bundle", len(self._queue)
        )
        return operation

    def _client_call(self, operation: QueuedOperation) -> Callable[[], Awaitable[WriteResult]]:
        if operation.method == "create":
            return lambda: self.client.create(operation.resource_type, operation.payload)
        if operation.method == "update":
            return lambda: self.client.update(operation.resource_type, operation.resource_id, operation.payload)
        if operation.method == "delete":
            return lambda: self.client.delete(operation.resource_type, operation.resource_id)
        if operation.method == "batch":
            return lambda: self.client.batch(operation.payload)
        if operation.method == "transaction":
            return lambda: self.client.transaction(operation.payload)
        raise ValueError(f"Unknown queued method: {operation.method}")

    async def _dispatch(self, operation: QueuedOperation) -> WriteResult:
        return await self._send(
            operation.method,
            self._client_call(operation),
            retry=operation.method in IDEMPOTENT_METHODS,
        )

    async def _mutate(
        self,
        method: MutationMethod,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        payload: Optional[Payload] = None,
    ) -> WriteResult:
        operation = QueuedOperation(
            method=method,
            resource_type=resource_type,
            resource_id=resource_id,
            payload=to_payload(payload) if payload is not None else None,
        )
        # queued writes must reach the server before newer ones
        if self.is_offline or self.is_replaying or self._queue:
            return self._enqueue(operation)
        try:
            return await self._dispatch(operation)
        except Exception as ex:
            if not is_connectivity_error(ex):
                raise
            logger.warning("%s %s failed while unreachable: %s", method, resource_type or "Bundle", ex)
            self.set_offline()
            # a create or bundle that may have reached the server is not resent
            if method not in IDEMPOTENT_METHODS and not is_unsent_error(ex):
                raise
            return self._enqueue(operation)

    async def replay_queue(self) -> ReplayReport:
        """
        Replay queued operations in FIFO order, one at a time.

        An operation leaves the queue only after the server confirms it. The
        first failure halts the pass, leaving it and everything after it queued.
        A call made while another pass is running returns a report with
        skipped=True and does nothing.
        """
        if self._replay_lock.locked():
            logger.debug("Replay already in progress; ignoring trigger")
            return ReplayReport(remaining=len(self._queue), skipped=True)

        async with self._replay_lock:
            report = ReplayReport()
            while self._queue and self.is_online:
                operation = self._queue[0]
                try:
                    await self._dispatch(operation)
                except Exception as ex:
                    logger.warning(
                        "Replay halted at queued %s %s: %s", operation.method, operation.resource_type or "Bundle", ex
                    )
                    report.failed = operation
                    report.error = str(ex)
                    if is_connectivity_error(ex):
                        self.set_offline()
                    break
                self._queue.popleft()
                report.replayed.append(operation)
            report.remaining = len(self._queue)
            return report

    # Mutating operations

    async def create(self, resource_type: str, payload: Payload) -> WriteResult:
        return await self._mutate("create", resource_type, payload=payload)

    async def update(self, resource_type: str, resource_id: str, payload: Payload) -> WriteResult:
        return await self._mutate("update", resource_type, resource_id, payload)

    async def delete(self, resource_type: str, resource_id: str) -> WriteResult:
        return await self._mutate("delete", resource_type, resource_id)

    async def batch(self, bundle: Payload) -> WriteResult:
        return await self._mutate("batch", payload=bundle)

    async def transaction(self, bundle: Payload) -> WriteResult:
        return await self._mutate("transaction", payload=bundle)

    async def create_patient(self, patient: Payload) -> WriteResult:
        return await self.create(PATIENT, patient)

    async def update_patient(self, patient_id: str, patient: Payload) -> WriteResult:
        return await self.update(PATIENT, patient_id, patient)

    async def delete_patient(self, patient_id: str) -> WriteResult:
        return await self.delete(PATIENT, patient_id)

    async def create_encounter(self, encounter: Payload) -> WriteResult:
        return await self.create(ENCOUNTER, encounter)

    async def update_encounter(self, encounter_id: str, encounter: Payload) -> WriteResult:
        return await self.update(ENCOUNTER, encounter_id, encounter)

    async def delete_encounter(self, encounter_id: str) -> WriteResult:
        return await self.delete(ENCOUNTER, encounter_id)

    # Reads

    async def search(
        self,
        resource_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        scope_to_organization: Optional[bool] = None,
    ) -> Bundle:
        return await self._read(self.client.search, resource_type, filters, scope_to_organization=scope_to_organization)

    async def get(self, resource_type: str, resource_id: str) -> Resource:
        return await self._read(self.client.get, resource_type, resource_id)

    async def get_capability_statement(self) -> Resource:
        return await self._read(self.client.get_capability_statement)

    async def search_patients(self, filters: Optional[Mapping[str, Any]] = None) -> Bundle:
        return await self._read(self.client.search_patients, filters)

    async def get_patient(self, patient_id: str) -> Resource:
        return await self._read(self.client.get_patient, patient_id)

    async def search_encounters(self, filters: Optional[Mapping[str, Any]] = None) -> Bundle:
        return await self._read(self.client.search_encounters, filters)

    async def get_patient_encounters(
        self, patient_id: str, count: int = DEFAULT_PAGE_SIZE, sort: Optional[str] = None
    ) -> Bundle:
        return await self._read(self.client.get_patient_encounters, patient_id, count, sort)

    async def get_encounter(self, encounter_id: str) -> Resource:
        return await self._read(self.client.get_encounter, encounter_id)

    async def get_patient_observations(
        self,
        patient_id: str,
        category: Optional[str] = None,
        code: Optional[str] = None,
        date: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._read(
            self.client.get_patient_observations, patient_id, category=category, code=code, date=date, count=count
        )

    async def get_patient_conditions(
        self,
        patient_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._read(
            self.client.get_patient_conditions, patient_id, category=category, status=status, count=count
        )

    async def get_patient_medication_requests(
        self, patient_id: str, status: Optional[str] = None, count: int = DEFAULT_PAGE_SIZE
    ) -> Bundle:
        return await self._read(self.client.get_patient_medication_requests, patient_id, status=status, count=count)

    async def get_patient_diagnostic_reports(
        self,
        patient_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._read(
            self.client.get_patient_diagnostic_reports, patient_id, category=category, status=status, count=count
        )

    async def get_patient_procedures(
        self, patient_id: str, status: Optional[str] = None, count: int = DEFAULT_PAGE_SIZE
    ) -> Bundle:
        return await self._read(self.client.get_patient_procedures, patient_id, status=status, count=count)

    async def get_encounter_resources(self, encounter_id: str) -> EncounterResources:
        return await self._read(self.client.get_encounter_resources, encounter_id)

    async def get_organizations(self) -> Bundle:
        return await self._read(self.client.get_organizations)

    async def get_organization(self, organization_id: str) -> Resource:
        return await self._read(self.client.get_organization, organization_id)
