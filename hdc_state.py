#!/usr/bin/env python3
"""
HDC State Model and Reconciler
Version: 1.0.0

Canonical transport / slot / configuration state for one deck, plus the
reconciler that sparse-merges push notifications and poll results into it.
Only fields present in a payload are touched; absent fields keep their value.
"""

import re
import logging
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Dict, List, Optional, Any, Callable, Set


class TransportStatus(Enum):
    """Transport status reported by the deck."""
    PREVIEW = "preview"
    STOPPED = "stopped"
    PLAY = "play"
    FORWARD = "forward"
    REWIND = "rewind"
    JOG = "jog"
    SHUTTLE = "shuttle"
    RECORD = "record"


class SlotStatus(Enum):
    """Media slot status."""
    EMPTY = "empty"
    ERROR = "error"
    MOUNTED = "mounted"
    MOUNTING = "mounting"


@dataclass
class TransportState:
    """Transport subsystem state. One per session."""
    status: Optional[TransportStatus] = None
    speed: int = 0
    slot_id: Optional[int] = None
    clip_id: Optional[int] = None
    single_clip: bool = False
    loop: bool = False
    display_timecode: str = ""
    timecode: str = ""
    video_format: str = ""


@dataclass
class SlotState:
    """State of one storage slot."""
    slot_id: int
    status: SlotStatus = SlotStatus.EMPTY
    recording_time: int = 0
    volume_name: str = ""
    video_format: str = ""


@dataclass
class ConfigurationState:
    """Deck input / recording configuration."""
    audio_input: str = ""
    video_input: str = ""
    file_format: str = ""


@dataclass
class DeviceInfo:
    """Identity reported by the deck on connect."""
    model: str = ""
    protocol_version: float = 0.0
    slot_count: int = 0
    unique_id: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'DeviceInfo':
        data = {normalize_key(k): v for k, v in (payload or {}).items()}
        info = cls()
        info.model = str(data.get('model') or '')
        info.unique_id = str(data.get('unique_id') or '')
        try:
            info.protocol_version = float(data.get('protocol_version') or 0.0)
        except (TypeError, ValueError):
            info.protocol_version = 0.0
        try:
            info.slot_count = int(data.get('slot_count') or data.get('slots') or 0)
        except (TypeError, ValueError):
            info.slot_count = 0
        return info


_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])(?=[A-Z])')


def normalize_key(key: str) -> str:
    """'slotId', 'slot id' and 'slot_id' all become 'slot_id'."""
    key = str(key).strip().replace(' ', '_').replace('-', '_')
    return _CAMEL_BOUNDARY.sub('_', key).lower()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('true', '1', 'yes', 'on'):
        return True
    if text in ('false', '0', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce_text(value: Any) -> str:
    return "" if value is None else str(value)


def _coerce_optional_int(value: Any) -> Optional[int]:
    if value is None or str(value).strip().lower() in ('', 'none'):
        return None
    return int(value)


def _coerce_enum(enum_cls: Any) -> Callable[[Any], Any]:
    def coerce(value: Any) -> Any:
        if isinstance(value, enum_cls):
            return value
        return enum_cls(str(value).strip().lower())
    return coerce


FIELD_COERCERS: Dict[str, Callable[[Any], Any]] = {
    'status': _coerce_enum(TransportStatus),
    'speed': int,
    'slot_id': _coerce_optional_int,
    'clip_id': _coerce_optional_int,
    'single_clip': _coerce_bool,
    'loop': _coerce_bool,
    'display_timecode': _coerce_text,
    'timecode': _coerce_text,
    'video_format': _coerce_text,
}

SLOT_COERCERS: Dict[str, Callable[[Any], Any]] = {
    'status': _coerce_enum(SlotStatus),
    'recording_time': int,
    'volume_name': _coerce_text,
    'video_format': _coerce_text,
}


class StateReconciler:
    """Merges notification and poll payloads into the session's state structs."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.transport = TransportState()
        self.slots: Dict[int, SlotState] = {}
        self.configuration = ConfigurationState()
        self.listeners: List[Callable[[str, Set[str]], None]] = []

    def add_listener(self, callback: Callable[[str, Set[str]], None]):
        """Register a callback run synchronously after every merge."""
        self.listeners.append(callback)

    @staticmethod
    def normalize_kind(kind: str) -> str:
        kind = str(kind)
        if kind.startswith('notify.'):
            kind = kind[len('notify.'):]
        return normalize_key(kind)

    def apply_notification(self, kind: str, payload: Dict[str, Any]) -> Set[str]:
        """Sparse-merge a payload into the struct named by kind; returns changed field names."""
        kind = self.normalize_kind(kind)
        payload = payload or {}

        if kind in ('transport', 'display_timecode'):
            changed = self.merge_transport(payload)
        elif kind == 'slot':
            changed = self.merge_slot(payload)
        elif kind == 'configuration':
            changed = self.merge_configuration(payload)
        else:
            self.logger.warning(f"Ignoring notification of unknown kind: {kind}")
            return set()

        for listener in list(self.listeners):
            listener(kind, changed)
        return changed

    def merge_transport(self, payload: Dict[str, Any]) -> Set[str]:
        changed = self._merge(self.transport, payload, FIELD_COERCERS, 'transport')

        slot_id = self.transport.slot_id
        if slot_id is not None and slot_id not in self.slots:
            self.logger.debug(f"Transport references unknown slot {slot_id}, adding placeholder")
            self.slots[slot_id] = SlotState(slot_id)

        if changed:
            self.logger.debug(f"Transport changed: {sorted(changed)}")
        return changed

    def merge_slot(self, payload: Dict[str, Any]) -> Set[str]:
        data = {normalize_key(k): v for k, v in payload.items()}
        try:
            slot_id = _coerce_optional_int(data.pop('slot_id', None))
        except (TypeError, ValueError):
            slot_id = None
        if slot_id is None:
            self.logger.warning(f"Slot update without a valid slot id: {payload}")
            return set()

        slot = self.slots.get(slot_id)
        if slot is None:
            slot = self.slots[slot_id] = SlotState(slot_id)

        changed = self._merge(slot, data, SLOT_COERCERS, f'slot {slot_id}')
        if changed:
            self.logger.debug(f"Slot {slot_id} changed: {sorted(changed)}")
        return changed

    def merge_configuration(self, payload: Dict[str, Any]) -> Set[str]:
        changed = self._merge(self.configuration, payload, {}, 'configuration')
        if changed:
            self.logger.debug(f"Configuration changed: {sorted(changed)}")
        return changed

    def _merge(self, target: Any, payload: Dict[str, Any],
               coercers: Dict[str, Callable[[Any], Any]], label: str) -> Set[str]:
        names = {f.name for f in fields(target)}
        if isinstance(target, SlotState):
            names.discard('slot_id')
        changed = set()

        for key, value in payload.items():
            name = normalize_key(key)
            if name not in names:
                self.logger.debug(f"Ignoring unknown {label} field '{key}'")
                continue

            coerce = coercers.get(name, _coerce_text)
            try:
                value = coerce(value)
            except (TypeError, ValueError) as e:
                self.logger.warning(f"Bad {label} value for '{key}': {value!r} ({e})")
                continue

            if getattr(target, name) != value:
                setattr(target, name, value)
                changed.add(name)

        return changed

    def replace_transport(self, payload: Dict[str, Any]) -> Set[str]:
        """Apply a full transport-info fetch result."""
        return self.apply_notification('transport', payload)

    def replace_slot(self, slot_id: int, payload: Dict[str, Any]) -> Set[str]:
        """Apply a full slot-info fetch result."""
        payload = dict(payload or {})
        payload.setdefault('slot_id', slot_id)
        return self.apply_notification('slot', payload)

    def replace_configuration(self, payload: Dict[str, Any]) -> Set[str]:
        return self.apply_notification('configuration', payload)

    def get_transport(self) -> TransportState:
        return replace(self.transport)

    def get_slot(self, slot_id: int) -> Optional[SlotState]:
        slot = self.slots.get(slot_id)
        return replace(slot) if slot else None

    def get_configuration(self) -> ConfigurationState:
        return replace(self.configuration)

    def active_slot(self) -> Optional[SlotState]:
        if self.transport.slot_id is None:
            return None
        return self.slots.get(self.transport.slot_id)

    def reset(self):
        """Drop all state (new session)."""
        self.transport = TransportState()
        self.slots = {}
        self.configuration = ConfigurationState()
