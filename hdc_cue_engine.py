#!/usr/bin/env python3
"""
HDC Cue Trigger Engine
Version: 1.0.0

Out-point fade/stop cueing driven by the computed playback frame:
- One authoritative phase (idle / armed / triggered) plus a stop latch
- Fade fires once when the remaining frames drop below the fade lead
- Stop fires once when the out point is reached
- Per-action execution metrics

evaluate() only updates latches and reports which actions fired. Sending the
stop command and running the fade are up to the caller.
"""

import time
import logging
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Dict, List, Optional, Any

from hdc_timecode import FrameRate, TimecodeValue


class CuePhase(Enum):
    """Cue cycle phase."""
    IDLE = "idle"
    ARMED = "armed"
    TRIGGERED = "triggered"


class CueAction(Enum):
    """Side effects a cue can fire."""
    FADE = "fade"
    STOP = "stop"


@dataclass
class CueState:
    """In/out points and the arm/trigger latches."""
    in_point: str = ""
    in_frame: Optional[int] = None
    out_point: str = ""
    out_frame: Optional[int] = None
    fade_duration_seconds: float = 0.0
    phase: CuePhase = CuePhase.IDLE
    stop_armed: bool = False

    @property
    def armed(self) -> bool:
        return self.phase == CuePhase.ARMED

    @property
    def triggered(self) -> bool:
        return self.phase == CuePhase.TRIGGERED


@dataclass
class CueActionMetrics:
    """Metrics for cue action tracking."""
    action: str
    fire_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_fired: float = 0
    last_error: str = ""


class CueEngine:
    """Arm/trigger state machine for the out-point cue."""

    def __init__(self, logger: logging.Logger, fade_duration_seconds: float = 0.0):
        self.logger = logger
        self.state = CueState(fade_duration_seconds=max(0.0, float(fade_duration_seconds)))
        self.metrics: Dict[CueAction, CueActionMetrics] = {
            action: CueActionMetrics(action.value) for action in CueAction
        }

    def set_fade_duration(self, seconds: float):
        self.state.fade_duration_seconds = max(0.0, float(seconds))

    def set_in_point(self, value: TimecodeValue) -> bool:
        """Capture the in point from a computed count-up timecode."""
        if not value.valid:
            self.logger.warning("Cannot set in point: no current timecode")
            return False
        self.state.in_point = value.hmsf
        self.state.in_frame = value.frame_count
        self.logger.info(f"In point set to {self.state.in_point}")
        return True

    def set_out_point(self, value: TimecodeValue) -> bool:
        """Capture the out point from a computed count-up timecode."""
        if not value.valid:
            self.logger.warning("Cannot set out point: no current timecode")
            return False
        self.state.out_point = value.hmsf
        self.state.out_frame = value.frame_count
        self.logger.info(f"Out point set to {self.state.out_point}")
        return True

    def arm(self, with_stop: bool = True):
        """Idle -> Armed. Re-arming after a trigger starts a fresh cycle."""
        if self.state.phase == CuePhase.TRIGGERED:
            self.reset()
        self.state.phase = CuePhase.ARMED
        if with_stop:
            self.state.stop_armed = True
        self.logger.info(f"Cue armed (stop {'armed' if self.state.stop_armed else 'not armed'})")

    def arm_stop(self):
        self.state.stop_armed = True
        self.logger.info("Auto-stop armed")

    def reset(self):
        """Any phase -> Idle; clears the stop latch."""
        if self.state.phase != CuePhase.IDLE or self.state.stop_armed:
            self.logger.info("Cue reset")
        self.state.phase = CuePhase.IDLE
        self.state.stop_armed = False

    def fade_frames(self, rate: FrameRate) -> int:
        return int(round(self.state.fade_duration_seconds * rate.fps))

    def remaining_to_out(self, current_frame: Optional[int]) -> Optional[int]:
        if current_frame is None or self.state.out_frame is None:
            return None
        return max(0, self.state.out_frame - current_frame)

    def evaluate(self, current_frame: Optional[int], rate: Optional[FrameRate]) -> List[CueAction]:
        """Advance the latches for one timecode tick; returns the actions that fired."""
        if rate is None:
            return []
        remaining = self.remaining_to_out(current_frame)
        if remaining is None:
            return []

        fired = []

        if self.state.phase == CuePhase.ARMED and remaining < self.fade_frames(rate):
            self.state.phase = CuePhase.TRIGGERED
            fired.append(CueAction.FADE)
            self.logger.info(f"Cue triggered with {remaining} frames to out point")
        elif self.state.phase == CuePhase.TRIGGERED and remaining == 0:
            self.state.phase = CuePhase.IDLE
            self.logger.debug("Out point reached, cue back to idle")

        if self.state.stop_armed and remaining == 0:
            self.state.stop_armed = False
            fired.append(CueAction.STOP)
            self.logger.info("Out point reached, auto-stop fired")

        for action in fired:
            metrics = self.metrics[action]
            metrics.fire_count += 1
            metrics.last_fired = time.time()

        return fired

    def record_result(self, action: CueAction, error: Optional[Exception] = None):
        """Account for the outcome of a dispatched action. Failures never re-arm."""
        metrics = self.metrics[action]
        if error is None:
            metrics.success_count += 1
            return
        metrics.failure_count += 1
        metrics.last_error = str(error)
        self.logger.error(f"Cue {action.value} failed: {error}")

    def get_state(self) -> CueState:
        return replace(self.state)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'phase': self.state.phase.value,
            'stop_armed': self.state.stop_armed,
            'in_point': self.state.in_point,
            'out_point': self.state.out_point,
            'action_metrics': {action.value: asdict(m) for action, m in self.metrics.items()},
        }
