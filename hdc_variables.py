#!/usr/bin/env python3
"""
HDC Display Values
Version: 1.0.0

Derives the named display values published to the host UI from session state.
Names follow the deck module's established variable ids so existing button
layouts keep working.
"""

import logging
from typing import Dict, List, Optional, Any, Callable

from hdc_state import TransportState, SlotState
from hdc_timecode import TimecodeValue, ComputedTimecode, PLACEHOLDER
from hdc_cue_engine import CueState

NO_VALUE = '—'

VARIABLE_DEFINITIONS: List[Dict[str, str]] = [
    {'name': 'status', 'label': 'Transport status'},
    {'name': 'speed', 'label': 'Play speed'},
    {'name': 'clipId', 'label': 'Clip ID'},
    {'name': 'slotId', 'label': 'Slot ID'},
    {'name': 'videoFormat', 'label': 'Video format'},
    {'name': 'recordingTime', 'label': 'Active slot recording time available'},
    {'name': 'slot1_recordingTime', 'label': 'Slot 1 recording time available'},
    {'name': 'slot2_recordingTime', 'label': 'Slot 2 recording time available'},
    {'name': 'clipCount', 'label': 'Clip count'},
    {'name': 'timecodeHMS', 'label': 'Timecode (HH:MM:SS)'},
    {'name': 'timecodeHMSF', 'label': 'Timecode (HH:MM:SS:FF)'},
    {'name': 'timecodeH', 'label': 'Timecode (HH)'},
    {'name': 'timecodeM', 'label': 'Timecode (MM)'},
    {'name': 'timecodeS', 'label': 'Timecode (SS)'},
    {'name': 'timecodeF', 'label': 'Timecode (FF)'},
    {'name': 'countdownTimecodeHMS', 'label': 'Countdown Timecode (HH:MM:SS)'},
    {'name': 'countdownTimecodeHMSF', 'label': 'Countdown Timecode (HH:MM:SS:FF)'},
    {'name': 'countdownTimecodeH', 'label': 'Countdown Timecode (HH)'},
    {'name': 'countdownTimecodeM', 'label': 'Countdown Timecode (MM)'},
    {'name': 'countdownTimecodeS', 'label': 'Countdown Timecode (SS)'},
    {'name': 'countdownTimecodeF', 'label': 'Countdown Timecode (FF)'},
    {'name': 'InPointHMSF', 'label': 'In point (HH:MM:SS:FF)'},
    {'name': 'OutPointHMSF', 'label': 'Out point (HH:MM:SS:FF)'},
    {'name': 'cuePhase', 'label': 'Cue phase'},
    {'name': 'stopArmed', 'label': 'Auto-stop armed'},
]


def capitalise(text: Any) -> str:
    if not isinstance(text, str) or not text:
        return ''
    return text[0].upper() + text[1:]


def format_recording_time(seconds: Optional[int]) -> str:
    """Seconds of recording time left as HH:MM:SS."""
    if seconds is None:
        return NO_VALUE
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def transport_variables(transport: TransportState) -> Dict[str, Any]:
    return {
        'status': capitalise(transport.status.value if transport.status else ''),
        'speed': transport.speed,
        'clipId': NO_VALUE if transport.clip_id is None else transport.clip_id,
        'slotId': NO_VALUE if transport.slot_id is None else transport.slot_id,
        'videoFormat': transport.video_format,
    }


def slot_variables(slots: Dict[int, SlotState], transport: TransportState) -> Dict[str, Any]:
    values = {}
    for slot_id, slot in sorted(slots.items()):
        values[f'slot{slot_id}_recordingTime'] = format_recording_time(slot.recording_time)

    active = slots.get(transport.slot_id) if transport.slot_id is not None else None
    if active is not None:
        values['recordingTime'] = format_recording_time(active.recording_time)
    return values


def clip_variables(clip_count: int) -> Dict[str, Any]:
    return {'clipCount': clip_count}


def _timecode_values(prefix: str, value: TimecodeValue) -> Dict[str, str]:
    parts = value.components()
    return {
        f'{prefix}HMS': value.hms,
        f'{prefix}HMSF': value.hmsf,
        f'{prefix}H': parts['H'],
        f'{prefix}M': parts['M'],
        f'{prefix}S': parts['S'],
        f'{prefix}F': parts['F'],
    }


def timecode_variables(computed: ComputedTimecode) -> Dict[str, str]:
    values = _timecode_values('timecode', computed.count_up)
    values.update(_timecode_values('countdownTimecode', computed.count_down))
    return values


def cue_variables(cue: CueState) -> Dict[str, Any]:
    placeholder = ':'.join([PLACEHOLDER] * 4)
    return {
        'InPointHMSF': cue.in_point or placeholder,
        'OutPointHMSF': cue.out_point or placeholder,
        'cuePhase': capitalise(cue.phase.value),
        'stopArmed': cue.stop_armed,
    }


class VariableStore:
    """Current display values; listeners receive only the values that changed."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.values: Dict[str, Any] = {}
        self.listeners: List[Callable[[Dict[str, Any]], None]] = []

    def add_listener(self, callback: Callable[[Dict[str, Any]], None]):
        self.listeners.append(callback)

    def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        changed = {name: value for name, value in values.items()
                   if self.values.get(name, object()) != value}
        if not changed:
            return changed

        self.logger.debug(f"Display values changed: {sorted(changed)}")
        self.values.update(changed)
        for listener in list(self.listeners):
            listener(dict(changed))
        return changed

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.values)

    def clear(self):
        self.values = {}
