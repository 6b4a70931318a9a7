"""
Client-side proctoring agent: drains the signal channel through the detector
and delivers each event to the ingestion gateway.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from .detector import DetectedEvent, ViolationDetector
from .signals import SignalAdapter

logger = logging.getLogger(__name__)

ALERT_MODAL = "modal"
ALERT_TOAST = "toast"


def alert_level(event: DetectedEvent) -> Optional[str]:
    """Blocking modal for critical events, dismissible toast for warnings"""
    if event.severity == "critical":
        return ALERT_MODAL
    if event.severity == "warning":
        return ALERT_TOAST
    return None


class EventSink(Protocol):
    async def __call__(self, event: DetectedEvent) -> Dict[str, Any]:
        ...


class DeliveryError(Exception):
    pass


class HttpEventSink:
    """Posts events to the ingestion API, retrying transport and server errors"""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        path: str = "/api/v1/proctoring/log-event",
    ):
        self.path = path
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self.headers = {"Authorization": f"Bearer {token}"}

    async def __call__(self, event: DetectedEvent) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.post(self.path, json=event.to_payload(), headers=self.headers)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"Delivery attempt {attempt} for {event.event_type} failed: {e}")
            else:
                if response.status_code == 409:
                    return {"terminated": False, "closed": True}
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    # client errors are not retried
                    raise DeliveryError(f"gateway rejected {event.event_type}: {response.status_code} {response.text}")
                last_error = DeliveryError(f"gateway answered {response.status_code}")
                logger.warning(f"Delivery attempt {attempt} for {event.event_type} got {response.status_code}")

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * attempt)

        raise DeliveryError(f"Giving up on {event.event_type} after {self.max_attempts} attempts") from last_error

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


class ProctoringAgent:
    def __init__(
        self,
        session_id: str,
        adapter: SignalAdapter,
        sink: EventSink,
        detector: Optional[ViolationDetector] = None,
        on_violation: Optional[Callable[[DetectedEvent, Dict[str, Any]], None]] = None,
        on_force_submit: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        self.session_id = session_id
        self.adapter = adapter
        self.sink = sink
        self.detector = detector or ViolationDetector(clock=adapter.clock)
        self.on_violation = on_violation
        self.on_force_submit = on_force_submit
        self.terminated = False
        self.closed = False

    @property
    def finished(self) -> bool:
        return self.terminated or self.closed

    async def start(self):
        for event in self.detector.start(self.session_id):
            await self._deliver(event)
        await self.adapter.acquire_media()

    async def process_pending(self) -> int:
        """Feed every queued signal to the detector in arrival order"""
        processed = 0
        while not self.adapter.channel.empty() and not self.finished:
            signal = self.adapter.channel.get_nowait()
            for event in self.detector.tick(self.session_id, signal):
                await self._deliver(event)
            processed += 1
        return processed

    async def stop(self):
        events = self.detector.stop(self.session_id)
        if self.finished:
            return
        for event in events:
            await self._deliver(event)

    async def run(self, stop_event: asyncio.Event):
        await self.start()
        poller = asyncio.create_task(self.adapter.run(stop_event))
        try:
            while not stop_event.is_set() and not self.finished:
                try:
                    signal = await asyncio.wait_for(self.adapter.channel.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                for event in self.detector.tick(self.session_id, signal):
                    await self._deliver(event)
        finally:
            stop_event.set()
            await poller
            await self.stop()

    async def _deliver(self, event: DetectedEvent):
        try:
            result = await self.sink(event)
        except DeliveryError as e:
            logger.error(f"Event {event.event_type} for session {self.session_id} not delivered: {e}")
            return

        if self.on_violation and alert_level(event) is not None:
            self.on_violation(event, result)

        if result.get("closed"):
            self.closed = True
            logger.info(f"Gateway reports session {self.session_id} closed")
            return

        if result.get("terminated") and not self.terminated:
            self.terminated = True
            logger.warning(f"Session {self.session_id} terminated by gateway, forcing submit")
            if self.on_force_submit:
                outcome = self.on_force_submit(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
