"""
Signal Adapter - wraps frame/audio capabilities and page events into one
ordered signal channel per session.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..core.config import settings
from ..utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class FaceLandmarks:
    """68-point model subsets: 6 points per eye, 9 nose points"""

    left_eye: Sequence[Point]
    right_eye: Sequence[Point]
    nose: Sequence[Point]


@dataclass(frozen=True)
class FaceDetectionResult:
    descriptor: Sequence[float]
    landmarks: Optional[FaceLandmarks] = None
    expressions: Mapping[str, float] = field(default_factory=dict)


class SignalKind(str, Enum):
    FRAME = "frame"
    AUDIO = "audio"
    VISIBILITY_HIDDEN = "visibility_hidden"
    WINDOW_BLURRED = "window_blurred"
    FULLSCREEN_EXITED = "fullscreen_exited"
    KEY_COMBO = "key_combo"
    CONTEXT_MENU_ATTEMPTED = "context_menu_attempted"
    SYSTEM_ERROR = "system_error"


DOM_SIGNALS = frozenset({
    SignalKind.VISIBILITY_HIDDEN,
    SignalKind.WINDOW_BLURRED,
    SignalKind.FULLSCREEN_EXITED,
    SignalKind.KEY_COMBO,
    SignalKind.CONTEXT_MENU_ATTEMPTED,
})


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    at: datetime
    faces: Tuple[FaceDetectionResult, ...] = ()
    audio_bands: Tuple[float, ...] = ()
    value: Optional[str] = None
    camera_active: bool = True
    mic_active: bool = True


class FrameAnalyzer(Protocol):
    async def analyze(self) -> Sequence[FaceDetectionResult]:
        ...


class AudioMeter(Protocol):
    async def read_bands(self) -> Sequence[float]:
        ...


MediaAcquirer = Callable[[], Awaitable[None]]
SignalListener = Callable[[Signal], None]


class SignalAdapter:
    """
    Produces signals for one session.

    Media capabilities are polled at a fixed cadence; page events are pushed
    by the host as they happen. Everything lands on ``channel`` in order.
    """

    def __init__(
        self,
        session_id: str,
        frame_analyzer: Optional[FrameAnalyzer] = None,
        audio_meter: Optional[AudioMeter] = None,
        media_acquirer: Optional[MediaAcquirer] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: Optional[float] = None,
    ):
        self.session_id = session_id
        self.frame_analyzer = frame_analyzer
        self.audio_meter = audio_meter
        self.media_acquirer = media_acquirer
        self.clock = clock
        self.poll_interval = settings.media_poll_interval if poll_interval is None else poll_interval
        self.channel: "asyncio.Queue[Signal]" = asyncio.Queue()
        self.camera_active = frame_analyzer is not None
        self.mic_active = audio_meter is not None
        self._listeners: Dict[SignalKind, List[SignalListener]] = {}
        self._media_error_reported = False

    def subscribe(self, kind: SignalKind, listener: SignalListener):
        self._listeners.setdefault(kind, []).append(listener)

    def unsubscribe(self, kind: SignalKind, listener: SignalListener):
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)

    def _publish(self, signal: Signal):
        self.channel.put_nowait(signal)
        for listener in list(self._listeners.get(signal.kind, [])):
            listener(signal)

    def _signal(self, kind: SignalKind, at: Optional[datetime] = None, **kwargs) -> Signal:
        return Signal(
            kind=kind,
            at=at or self.clock(),
            camera_active=self.camera_active,
            mic_active=self.mic_active,
            **kwargs
        )

    def report_media_failure(self, message: str):
        """Drop to page-events-only mode; reported once per session"""
        self.camera_active = False
        self.mic_active = False
        if self._media_error_reported:
            return
        self._media_error_reported = True
        logger.warning(f"Media unavailable for session {self.session_id}: {message}")
        self._publish(self._signal(SignalKind.SYSTEM_ERROR, value=message))

    async def acquire_media(self) -> bool:
        if self.media_acquirer is None:
            return self.camera_active or self.mic_active
        try:
            await self.media_acquirer()
        except Exception as e:
            self.report_media_failure(f"Failed to access camera/microphone: {e}")
            return False
        return True

    def push_dom_signal(self, kind: SignalKind, value: Optional[str] = None, at: Optional[datetime] = None):
        if kind not in DOM_SIGNALS:
            raise ValueError(f"{kind} is not a page event signal")
        self._publish(self._signal(kind, at=at, value=value))

    async def poll_media(self):
        """One vision/audio tick"""
        if self.frame_analyzer is not None and self.camera_active:
            try:
                faces = await self.frame_analyzer.analyze()
            except Exception as e:
                logger.warning(f"Frame analysis failed for session {self.session_id}: {e}")
            else:
                self._publish(self._signal(SignalKind.FRAME, faces=tuple(faces)))

        if self.audio_meter is not None and self.mic_active:
            try:
                bands = await self.audio_meter.read_bands()
            except Exception as e:
                logger.warning(f"Audio sampling failed for session {self.session_id}: {e}")
            else:
                self._publish(self._signal(SignalKind.AUDIO, audio_bands=tuple(float(b) for b in bands)))

    async def run(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            await self.poll_media()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
