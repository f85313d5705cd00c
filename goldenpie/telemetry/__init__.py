"""
Telemetry
=========

Emulator memory polling and reward-event pipeline:

    MemoryChannel -> TelemetrySampler -> EventDetector -> CooldownGate
                  -> RewardDispatcher, driven by PollLoop.
"""

from .channel import (
    ChannelError,
    MemoryChannel,
    TransportError,
    TransportTimeout,
    format_read_command,
    parse_read_response,
)
from .cooldown import CooldownGate, GAME_STARTUP_COOLDOWN
from .detector import (
    JUMP_THRESHOLD,
    Baseline,
    DeltaClass,
    Detection,
    EventDetector,
    Observation,
    RewardEvent,
    RewardKind,
)
from .dispatcher import PaymentAttempt, PaymentErrorLog, RewardDispatcher
from .events import EventBus
from .sampler import (
    CounterKind,
    CounterSpec,
    ReadFailurePolicy,
    Snapshot,
    TelemetrySampler,
    build_counter_specs,
    counter_name,
)
from .scanner import MemoryScanner
from .scheduler import LoopState, ParticipantSlot, PollLoop, TickMetrics

__all__ = [
    'ChannelError',
    'MemoryChannel',
    'TransportError',
    'TransportTimeout',
    'format_read_command',
    'parse_read_response',
    'CooldownGate',
    'GAME_STARTUP_COOLDOWN',
    'JUMP_THRESHOLD',
    'Baseline',
    'DeltaClass',
    'Detection',
    'EventDetector',
    'Observation',
    'RewardEvent',
    'RewardKind',
    'PaymentAttempt',
    'PaymentErrorLog',
    'RewardDispatcher',
    'EventBus',
    'CounterKind',
    'CounterSpec',
    'ReadFailurePolicy',
    'Snapshot',
    'TelemetrySampler',
    'build_counter_specs',
    'counter_name',
    'MemoryScanner',
    'LoopState',
    'ParticipantSlot',
    'PollLoop',
    'TickMetrics',
]
