"""Turn gameplay telemetry into per-motor vibration speeds.

Four motor slots, each bound to one telemetry source.  The formulas are the
whole point of the bridge, so they live in one place
(:meth:`BindingEngine.compute_speed`):

* health   -> ``cap * (1 - health**4)``  (buzz harder as health drains)
* combo    -> ``cap * clamp(combo / max_combo * combo_factor, 0, 1)``
* accuracy -> ``cap * accuracy``
* hit      -> ``cap * judgement_weight``  (300 = 1.0, miss = 0.0)

``invert`` flips a slot to ``1 - speed``.  Everything is clamped into [0, 1]
right before it leaves for the dispatcher.
"""

from __future__ import annotations

import enum
import itertools
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

MOTOR_COUNT = 4


def clamp(value, lower, upper):
    """Clamp ``value`` into ``[lower, upper]`` with no surprises."""

    return max(lower, min(upper, value))


class TelemetryKind(enum.Enum):
    HEALTH = "health"
    COMBO = "combo"
    ACCURACY = "accuracy"
    HIT = "hit"
    PLAY_STATE = "playing"


class Behavior(enum.Enum):
    NONE = "none"
    HEALTH = "health"
    COMBO = "combo"
    ACCURACY = "accuracy"
    HIT = "hit"

    @property
    def description(self) -> str:
        return _BEHAVIOR_DESCRIPTIONS[self]

    @property
    def telemetry_kind(self) -> Optional[TelemetryKind]:
        if self is Behavior.NONE:
            return None
        return TelemetryKind(self.value)


_BEHAVIOR_DESCRIPTIONS = {
    Behavior.NONE: "Not available / do nothing",
    Behavior.HEALTH: "Bind to health",
    Behavior.COMBO: "Bind to combo",
    Behavior.ACCURACY: "Bind to accuracy",
    Behavior.HIT: "Pulse on hit judgements",
}


@dataclass(frozen=True)
class MotorBinding:
    motor_index: int
    behavior: Behavior = Behavior.NONE
    invert: bool = False


@dataclass(frozen=True)
class TelemetrySample:
    kind: TelemetryKind
    value: float
    sequence: int = 0


@dataclass(frozen=True)
class SpeedCommand:
    motor_index: int
    speed: float


def default_bindings() -> Tuple[MotorBinding, ...]:
    return (
        MotorBinding(0, Behavior.HEALTH),
        MotorBinding(1, Behavior.COMBO),
        MotorBinding(2, Behavior.NONE),
        MotorBinding(3, Behavior.NONE),
    )


@dataclass(frozen=True)
class BridgeSettings:
    """Everything the engine reads per session.  Swapped whole on reload."""

    bindings: Tuple[MotorBinding, ...] = field(default_factory=default_bindings)
    speed_cap: float = 1.0
    max_combo_factor: float = 0.3

    def __post_init__(self) -> None:
        if len(self.bindings) != MOTOR_COUNT:
            raise ValueError(f"expected {MOTOR_COUNT} motor bindings, got {len(self.bindings)}")
        for slot, binding in enumerate(self.bindings):
            if binding.motor_index != slot:
                raise ValueError(f"binding in slot {slot} targets motor {binding.motor_index}")


class BindingEngine:
    """Gate telemetry on play state and forward computed speeds.

    ``dispatcher`` only needs ``dispatch(motor_index, speed)`` and
    ``stop_all()``; tests hand in a recorder.
    """

    def __init__(self, dispatcher, settings: Optional[BridgeSettings] = None):
        self.dispatcher = dispatcher
        self._settings = settings or BridgeSettings()
        self._play_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self.is_playing = False
        self.max_combo = 0

    @property
    def settings(self) -> BridgeSettings:
        return self._settings

    def configure(self, settings: BridgeSettings) -> None:
        self._settings = settings

    def set_max_combo(self, max_combo: int) -> None:
        """Store the hit-object count of the freshly loaded beatmap."""

        self.max_combo = max(0, int(max_combo))

    def on_play_state_changed(self, is_playing: bool) -> bool:
        """Track play state; returns ``True`` when a stop-all went out."""

        is_playing = bool(is_playing)
        with self._play_lock:
            was_playing, self.is_playing = self.is_playing, is_playing
        if was_playing and not is_playing:
            self.dispatcher.stop_all()
            return True
        return False

    def on_telemetry(self, sample: TelemetrySample) -> List[SpeedCommand]:
        if sample.kind is TelemetryKind.PLAY_STATE:
            self.on_play_state_changed(bool(sample.value))
            return []
        if not self.is_playing:
            return []

        settings = self._settings
        commands = []
        for binding in settings.bindings:
            if binding.behavior.telemetry_kind is not sample.kind:
                continue
            command = SpeedCommand(
                motor_index=binding.motor_index,
                speed=self.compute_speed(binding, sample.value, settings),
            )
            self.dispatcher.dispatch(command.motor_index, command.speed)
            commands.append(command)
        return commands

    def compute_speed(self, binding: MotorBinding, value, settings: BridgeSettings) -> float:
        value = float(value)
        cap = settings.speed_cap
        behavior = binding.behavior
        if behavior is Behavior.HEALTH:
            speed = cap * (1 - value ** 4)
        elif behavior is Behavior.COMBO:
            if self.max_combo <= 0:
                speed = 0.0
            else:
                ratio = value / self.max_combo * settings.max_combo_factor
                speed = cap * clamp(ratio, 0.0, 1.0)
        elif behavior in (Behavior.ACCURACY, Behavior.HIT):
            speed = cap * value
        else:
            speed = 0.0
        if binding.invert:
            speed = 1 - speed
        return float(clamp(speed, 0.0, 1.0))

    def sample(self, kind: TelemetryKind, value) -> TelemetrySample:
        return TelemetrySample(kind=kind, value=value, sequence=next(self._sequence))

    def on_health(self, health: float) -> List[SpeedCommand]:
        return self.on_telemetry(self.sample(TelemetryKind.HEALTH, health))

    def on_combo(self, combo: int) -> List[SpeedCommand]:
        return self.on_telemetry(self.sample(TelemetryKind.COMBO, combo))

    def on_accuracy(self, accuracy: float) -> List[SpeedCommand]:
        return self.on_telemetry(self.sample(TelemetryKind.ACCURACY, accuracy))

    def on_hit(self, weight: float) -> List[SpeedCommand]:
        return self.on_telemetry(self.sample(TelemetryKind.HIT, weight))
