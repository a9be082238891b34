#!/usr/bin/env python3
"""
HDC Clip Directory Cache
Version: 1.0.0

Per-slot clip lists fetched from the deck. A refresh replaces the slot's list
wholesale and regenerates the clip-name choices offered to the action layer.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Callable, Awaitable, Union

from hdc_connection import (
    Command, CommandKind, CommandError, CommandTimeout, DeviceConnectionError
)
from hdc_state import normalize_key


@dataclass
class Clip:
    """One clip as reported by the deck."""
    clip_id: int
    name: str = ""
    start_time: Union[str, int, None] = None
    duration: Union[str, int, None] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Clip':
        data = {normalize_key(k): v for k, v in payload.items()}
        clip_id = data.get('clip_id', data.get('id'))
        if clip_id is None:
            raise ValueError(f"clip without id: {payload}")
        return cls(
            clip_id=int(clip_id),
            name=str(data.get('name') or ''),
            start_time=data.get('start_time'),
            duration=data.get('duration'),
        )


class ClipDirectory:
    """Caches clip lists per slot and exposes them as selectable choices."""

    def __init__(self, send_command: Callable[[Command], Awaitable[Dict[str, Any]]],
                 logger: logging.Logger):
        self.send_command = send_command
        self.logger = logger

        self.clips: Dict[int, List[Clip]] = {}
        self.clip_count = 0
        self.choices: List[Dict[str, Any]] = []
        self.choice_listeners: List[Callable[[List[Dict[str, Any]]], None]] = []

    def add_choice_listener(self, callback: Callable[[List[Dict[str, Any]]], None]):
        self.choice_listeners.append(callback)

    async def refresh(self, slot_id: int) -> bool:
        """Re-fetch the clip list for a slot. Returns False when the deck could not answer."""
        try:
            response = await self.send_command(Command(CommandKind.CLIPS_COUNT))
            count = int(response.get('count', 0))

            if count > 0:
                response = await self.send_command(Command(CommandKind.CLIPS_GET))
                clips = [Clip.from_payload(item) for item in response.get('clips', [])]
            else:
                clips = []

        except CommandError as e:
            self.logger.error(f"{e.code} {e.name}")
            return False
        except (CommandTimeout, DeviceConnectionError) as e:
            self.logger.error(f"Clip refresh for slot {slot_id} failed: {e}")
            return False
        except (TypeError, ValueError) as e:
            self.logger.error(f"Bad clip list from deck for slot {slot_id}: {e}")
            return False

        self.clip_count = count
        self.clips[slot_id] = clips
        self.choices = [{'id': clip.clip_id, 'label': clip.name} for clip in clips]
        self.logger.debug(f"Slot {slot_id}: {count} clips")

        for listener in list(self.choice_listeners):
            listener(list(self.choices))
        return True

    def get_clips(self, slot_id: int) -> List[Clip]:
        return list(self.clips.get(slot_id, []))

    def find_by_id(self, slot_id: Optional[int], clip_id: Optional[int]) -> Optional[Clip]:
        if slot_id is None or clip_id is None:
            return None
        for clip in self.clips.get(slot_id, []):
            if clip.clip_id == clip_id:
                return clip
        return None

    def find_by_name(self, slot_id: Optional[int], name: str) -> Optional[Clip]:
        if slot_id is None:
            return None
        for clip in self.clips.get(slot_id, []):
            if clip.name == name:
                return clip
        return None

    def clear(self):
        self.clips = {}
        self.clip_count = 0
        self.choices = []
