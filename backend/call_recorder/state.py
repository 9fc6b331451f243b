"""
Recording state machine.

transition() is a pure function of (state, event, session view) returning
the next state and the ordered effects the orchestrator must execute. It
holds no resources and performs no I/O, so every path can be tested in
isolation.

    IDLE -> ACQUIRING -> RECORDING -> STOPPING -> IDLE
    ACQUIRING -> RETRY_BACKOFF -> ACQUIRING
    any state -> IDLE on forced teardown
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional


class State(str, Enum):
    IDLE = 'idle'
    ACQUIRING = 'acquiring'
    RETRY_BACKOFF = 'retry_backoff'
    RECORDING = 'recording'
    STOPPING = 'stopping'


class Effect(str, Enum):
    BEGIN_SESSION = 'begin_session'
    ACQUIRE = 'acquire'
    SCHEDULE_RETRY = 'schedule_retry'
    CANCEL_PENDING = 'cancel_pending'
    MARK_ENDED = 'mark_ended'
    ADOPT_STREAMS = 'adopt_streams'
    START_RECORDER = 'start_recorder'
    MARK_STARTED = 'mark_started'
    APPEND_CHUNK = 'append_chunk'
    DROP_CHUNK = 'drop_chunk'
    MARK_ENCODER_ERROR = 'mark_encoder_error'
    STOP_RECORDER = 'stop_recorder'
    ABORT_RECORDER = 'abort_recorder'
    RELEASE_STREAMS = 'release_streams'
    FINALIZE = 'finalize'
    FINALIZE_PARTIAL = 'finalize_partial'
    REPORT_STARTED = 'report_started'
    REPORT_FAILED = 'report_failed'
    END_SESSION = 'end_session'
    IGNORE = 'ignore'


# Events

@dataclass(frozen=True)
class SessionSignal:
    """Audio-session activity of a watched process."""
    process_name: str
    active: bool


@dataclass(frozen=True)
class EndCall:
    pass


@dataclass(frozen=True)
class Teardown:
    reason: str = 'shutdown'


@dataclass(frozen=True)
class AcquireSucceeded:
    session_id: int
    sources: dict = field(compare=False)
    graph: Any = field(compare=False)
    mixed: Any = field(compare=False)


@dataclass(frozen=True)
class AcquireFailed:
    session_id: int
    error: Exception = field(compare=False)


@dataclass(frozen=True)
class RetryElapsed:
    session_id: int


@dataclass(frozen=True)
class RecorderStarted:
    session_id: int


@dataclass(frozen=True)
class ChunkReady:
    session_id: int
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class RecorderStopped:
    session_id: int


@dataclass(frozen=True)
class RecorderFailed:
    session_id: int
    error: Exception = field(compare=False)


@dataclass(frozen=True)
class StopTimedOut:
    session_id: int


class SessionView(NamedTuple):
    """The facts about the current session a transition may depend on."""
    process_name: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    end_requested: bool = False


class Transition(NamedTuple):
    state: State
    effects: tuple = ()


def _stay(state, *effects):
    return Transition(state, tuple(effects))


def _ends_session(event, view: SessionView) -> bool:
    """An inactive signal for the process the session belongs to."""
    return (
        isinstance(event, SessionSignal)
        and not event.active
        and event.process_name == view.process_name
    )


def transition(state: State, event, view: SessionView = SessionView()) -> Transition:
    if isinstance(event, Teardown):
        return _teardown(state)

    if state is State.IDLE:
        if isinstance(event, SessionSignal) and event.active:
            return Transition(State.ACQUIRING, (Effect.BEGIN_SESSION, Effect.ACQUIRE))
        return _stay(state)

    if isinstance(event, SessionSignal) and event.active:
        # A session is already in progress
        return _stay(state, Effect.IGNORE)

    if state is State.ACQUIRING:
        if _ends_session(event, view):
            return _stay(state, Effect.MARK_ENDED)
        if isinstance(event, EndCall):
            return Transition(State.IDLE, (Effect.CANCEL_PENDING, Effect.END_SESSION))
        if isinstance(event, AcquireSucceeded):
            if view.end_requested:
                return Transition(State.IDLE, (Effect.ADOPT_STREAMS, Effect.RELEASE_STREAMS, Effect.END_SESSION))
            return Transition(State.RECORDING, (Effect.ADOPT_STREAMS, Effect.START_RECORDER))
        if isinstance(event, AcquireFailed):
            if view.end_requested:
                return Transition(State.IDLE, (Effect.END_SESSION,))
            if view.retry_count < view.max_retries:
                return Transition(State.RETRY_BACKOFF, (Effect.SCHEDULE_RETRY,))
            return Transition(State.IDLE, (Effect.REPORT_FAILED, Effect.END_SESSION))
        return _stay(state)

    if state is State.RETRY_BACKOFF:
        if isinstance(event, RetryElapsed):
            return Transition(State.ACQUIRING, (Effect.ACQUIRE,))
        if _ends_session(event, view) or isinstance(event, EndCall):
            return Transition(State.IDLE, (Effect.CANCEL_PENDING, Effect.END_SESSION))
        return _stay(state)

    if state is State.RECORDING:
        if isinstance(event, ChunkReady):
            return _stay(state, Effect.APPEND_CHUNK)
        if isinstance(event, RecorderStarted):
            return _stay(state, Effect.MARK_STARTED, Effect.REPORT_STARTED)
        if _ends_session(event, view) or isinstance(event, EndCall):
            return Transition(State.STOPPING, (Effect.STOP_RECORDER,))
        if isinstance(event, RecorderFailed):
            return Transition(State.STOPPING, (Effect.MARK_ENCODER_ERROR, Effect.STOP_RECORDER))
        if isinstance(event, RecorderStopped):
            # Encoder stopped on its own
            return Transition(State.IDLE, (Effect.RELEASE_STREAMS, Effect.FINALIZE, Effect.END_SESSION))
        return _stay(state)

    if state is State.STOPPING:
        if isinstance(event, ChunkReady):
            return _stay(state, Effect.DROP_CHUNK)
        if isinstance(event, (RecorderStopped, RecorderFailed, StopTimedOut)):
            effects = [Effect.CANCEL_PENDING]
            if isinstance(event, RecorderFailed):
                effects.append(Effect.MARK_ENCODER_ERROR)
            if isinstance(event, StopTimedOut):
                effects.append(Effect.ABORT_RECORDER)
            effects += [Effect.RELEASE_STREAMS, Effect.FINALIZE, Effect.END_SESSION]
            return Transition(State.IDLE, tuple(effects))
        return _stay(state)

    return _stay(state)


def _teardown(state: State) -> Transition:
    """Forced teardown: release everything now, keep partial recordings."""
    if state is State.IDLE:
        return _stay(state)
    if state in (State.ACQUIRING, State.RETRY_BACKOFF):
        return Transition(State.IDLE, (Effect.CANCEL_PENDING, Effect.RELEASE_STREAMS, Effect.END_SESSION))
    return Transition(State.IDLE, (
        Effect.CANCEL_PENDING,
        Effect.ABORT_RECORDER,
        Effect.RELEASE_STREAMS,
        Effect.FINALIZE_PARTIAL,
        Effect.END_SESSION,
    ))
