#!/usr/bin/env python3
"""
HDC Device Session
Version: 1.0.0

Single owner of everything known about one connected deck. Wires the
connection manager, state reconciler, clip cache, timecode engine, cue engine,
poll scheduler and display values together, and exposes the operations the
action/feedback layer calls.

Update flow for every transport change:
    notification / poll -> reconciler merge -> timecode recompute
        -> cue evaluation -> display values
"""

import time
import asyncio
import logging
from typing import Dict, List, Optional, Any, Callable, Set, Union

from hdc_connection import (
    Command, CommandKind, CommandError, CommandTimeout, ConnectionManager,
    ConnectionState, DeviceConnectionError, DeviceTransport
)
from hdc_state import (
    StateReconciler, TransportState, SlotState, ConfigurationState, DeviceInfo, normalize_key
)
from hdc_clips import Clip, ClipDirectory
from hdc_timecode import ComputedTimecode, TimecodeEngine, split_timecode
from hdc_cue_engine import CueAction, CueEngine, CueState
from hdc_poller import PollScheduler, clamp_poll_interval
from hdc_variables import (
    VARIABLE_DEFINITIONS, VariableStore, transport_variables, slot_variables,
    clip_variables, timecode_variables, cue_variables
)
from hdc_config import (
    DEFAULT_CONFIG, DISPLAY_TIMECODE_MIN_PROTOCOL, merge_config, detect_model, max_shuttle
)

DEFAULT_SLOT_COUNT = 2

DEVICE_ERRORS = (CommandError, CommandTimeout, DeviceConnectionError)


class DeviceSession:
    """State and command surface for one deck connection."""

    def __init__(self, transport: DeviceTransport, config: Dict[str, Any], logger: logging.Logger):
        self.config = merge_config(DEFAULT_CONFIG, config or {})
        self.logger = logger

        device = self.config['device']
        timecode = self.config['timecode']

        self.connection = ConnectionManager(
            transport, logger,
            command_timeout=device['command_timeout'],
            connect_timeout=device['connect_timeout'],
        )
        self.reconciler = StateReconciler(logger)
        self.clips = ClipDirectory(self.connection.send_command, logger)
        self.timecode = TimecodeEngine(logger)
        self.cue = CueEngine(logger, self.config['cue']['fade_duration'])
        self.poller = PollScheduler(
            self._poll_transport, logger,
            interval_ms=timecode['polling_interval'],
            max_failures=timecode['max_poll_failures'],
        )
        self.variables = VariableStore(logger)

        self.device_info = DeviceInfo()
        self.model_id = device['model_id']
        self.format_token: Optional[str] = None
        self._format_expiry: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        self.cue_listeners: List[Callable[[CueAction, CueState], None]] = []
        self.status_listeners: List[Callable[[ConnectionState, str], None]] = []
        self.format_listeners: List[Callable[[bool], None]] = []

        self._command_builders = {
            CommandKind.RECORD: self._build_record,
            CommandKind.GOTO: self._build_goto,
            CommandKind.JOG: self._build_jog,
            CommandKind.SHUTTLE: self._build_shuttle,
            CommandKind.SLOT_SELECT: self._build_slot_select,
            CommandKind.CONFIGURATION: self._build_configuration,
            CommandKind.FORMAT: self._build_format,
            CommandKind.FORMAT_CONFIRM: self._build_format_confirm,
            CommandKind.REMOTE: self._build_remote,
        }

        self.connection.notification_handler = self._handle_notification
        self.connection.connected_listeners.append(self._on_connected)
        self.connection.disconnected_listeners.append(self._on_disconnected)
        self.connection.error_listeners.append(self._on_transport_error)
        self.reconciler.add_listener(self._on_state_changed)
        self.clips.add_choice_listener(self._on_choices_changed)

    @property
    def status(self) -> ConnectionState:
        return self.connection.state

    @property
    def connected(self) -> bool:
        return self.connection.connected

    @property
    def timecode_mode(self) -> str:
        return self.config['timecode']['mode']

    @property
    def display_timecode_supported(self) -> bool:
        return self.device_info.protocol_version >= DISPLAY_TIMECODE_MIN_PROTOCOL

    async def connect(self):
        """Open a fresh session; previous state is dropped."""
        self.reconciler.reset()
        self.clips.clear()
        self.variables.clear()
        self.device_info = DeviceInfo()
        device = self.config['device']
        await self.connection.connect(device['host'], device['port'])

    def disconnect(self):
        self.connection.disconnect()

    async def _on_connected(self, info: Dict[str, Any]):
        self.device_info = DeviceInfo.from_payload(info)
        self.logger.info(f"Connected to a {self.device_info.model or 'deck'} "
                         f"(protocol {self.device_info.protocol_version})")
        self._update_model(self.device_info.model)

        await self._subscribe()
        if self.connected:
            await self._initial_fetch()

        # The link can drop mid-fetch; _on_disconnected has already cleaned up
        if not self.connected:
            return
        self._activate_timecode_path()
        self._notify_status()

    def _on_disconnected(self, error: Optional[Exception]):
        self.poller.stop()
        self._clear_format_token()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if error is not None:
            self.logger.error(f"Deck disconnected: {error}")
        self._notify_status()

    def _on_transport_error(self, error: Exception):
        """Non-fatal transport fault; status is unchanged but the message reaches the host."""
        for listener in list(self.status_listeners):
            listener(self.connection.state, str(error))

    def _notify_status(self):
        state = self.connection.state
        message = self.connection.status.error_message
        for listener in list(self.status_listeners):
            listener(state, message)

    def _update_model(self, model: str):
        if not model or not self.config['device'].get('auto_detect_model', True):
            return
        model_id = detect_model(model)
        if model_id != self.model_id:
            self.logger.info(f"Detected model {model_id} from '{model}'")
        self.model_id = model_id
        self.config['device']['model_id'] = model_id

    async def _subscribe(self):
        params = {'transport': True, 'slot': True, 'configuration': True}
        if self.display_timecode_supported and self.timecode_mode == 'notifications':
            params['display_timecode'] = True

        try:
            await self.connection.send_command(Command(CommandKind.NOTIFY_SET, params))
        except DEVICE_ERRORS as e:
            self._log_device_error("Notification subscription failed", e)

    async def _initial_fetch(self):
        """device info -> slot count -> per-slot info -> transport -> configuration -> clips"""
        try:
            info = await self.connection.send_command(Command(CommandKind.DEVICE_INFO))
            merged = dict(self.connection.connection_info)
            merged.update(info)
            self.device_info = DeviceInfo.from_payload(merged)

            slot_count = self.device_info.slot_count or DEFAULT_SLOT_COUNT
            for slot_id in range(1, slot_count + 1):
                slot = await self.connection.send_command(
                    Command(CommandKind.SLOT_INFO, {'slot_id': slot_id})
                )
                self.reconciler.replace_slot(slot_id, slot)

            transport = await self.connection.send_command(Command(CommandKind.TRANSPORT_INFO))
            self.reconciler.replace_transport(transport)

            configuration = await self.connection.send_command(Command(CommandKind.CONFIGURATION_GET))
            self.reconciler.replace_configuration(configuration)

        except DEVICE_ERRORS as e:
            self._log_device_error("Connection error", e)

        slot_id = self.reconciler.transport.slot_id
        if slot_id is not None and self.connected:
            await self.clips.refresh(slot_id)
        self._publish_variables()

    def _log_device_error(self, context: str, error: Exception):
        if isinstance(error, CommandError):
            self.logger.error(f"{context} - {error.code} {error.name}")
        else:
            self.logger.error(f"{context} - {error}")

    async def _handle_notification(self, kind: str, payload: Dict[str, Any]):
        kind = StateReconciler.normalize_kind(kind)

        if kind == 'display_timecode' and self.timecode_mode != 'notifications':
            self.logger.debug("Ignoring display timecode notification outside notifications mode")
            return

        self.reconciler.apply_notification(kind, payload)

        if kind == 'slot':
            data = {normalize_key(k): v for k, v in (payload or {}).items()}
            await self._refresh_after_slot_change(data.get('slot_id'))

    async def _refresh_after_slot_change(self, slot_id: Any = None):
        """A slot change can silently move the active slot/clip; re-read transport and clips."""
        try:
            transport = await self.connection.send_command(Command(CommandKind.TRANSPORT_INFO))
            self.reconciler.replace_transport(transport)
        except DEVICE_ERRORS as e:
            self._log_device_error("Transport refresh failed", e)

        if slot_id is None:
            slot_id = self.reconciler.transport.slot_id
        try:
            slot_id = int(slot_id)
        except (TypeError, ValueError):
            return
        await self.clips.refresh(slot_id)

    async def _poll_transport(self):
        transport = await self.connection.send_command(Command(CommandKind.TRANSPORT_INFO))
        self.reconciler.replace_transport(transport)

    def _activate_timecode_path(self):
        if self.timecode_mode == 'polling':
            self.poller.start()
        else:
            self.poller.stop()

    def _on_state_changed(self, kind: str, changed: Set[str]):
        if kind == 'configuration':
            return
        self._recompute()

    def _on_choices_changed(self, choices: List[Dict[str, Any]]):
        self._recompute()

    def _recompute(self):
        computed = self.timecode.compute(self.reconciler.transport, self.clips)
        for action in self.cue.evaluate(computed.current_frame, computed.rate):
            self._dispatch_cue_action(action)
        self._publish_variables()

    def _publish_variables(self):
        transport = self.reconciler.transport
        values: Dict[str, Any] = {}
        values.update(transport_variables(transport))
        values.update(slot_variables(self.reconciler.slots, transport))
        values.update(clip_variables(self.clips.clip_count))
        values.update(timecode_variables(self.timecode.last))
        values.update(cue_variables(self.cue.state))
        self.variables.update(values)

    def _dispatch_cue_action(self, action: CueAction):
        state = self.cue.get_state()
        for listener in list(self.cue_listeners):
            try:
                listener(action, state)
            except Exception as e:
                self.cue.record_result(action, e)

        if action == CueAction.STOP:
            self._track(self._send_auto_stop())
        else:
            self.cue.record_result(action)

    async def _send_auto_stop(self):
        try:
            await self.connection.send_command(Command(CommandKind.STOP))
        except DEVICE_ERRORS as e:
            self.cue.record_result(CueAction.STOP, e)
            return
        self.cue.record_result(CueAction.STOP)

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_pending(self):
        """Wait for dispatched cue side effects to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_transport_state(self) -> TransportState:
        return self.reconciler.get_transport()

    def get_slot_state(self, slot_id: int) -> Optional[SlotState]:
        return self.reconciler.get_slot(slot_id)

    def get_configuration_state(self) -> ConfigurationState:
        return self.reconciler.get_configuration()

    def get_clip(self, slot_id: int, clip: Union[int, str]) -> Optional[Clip]:
        """Look up a clip by id or by name within a slot."""
        if isinstance(clip, int):
            return self.clips.find_by_id(slot_id, clip)
        return self.clips.find_by_name(slot_id, clip)

    def get_clip_choices(self) -> List[Dict[str, Any]]:
        return list(self.clips.choices)

    def get_computed_timecode(self) -> ComputedTimecode:
        return self.timecode.last

    def get_cue_state(self) -> CueState:
        return self.cue.get_state()

    def get_variables(self) -> Dict[str, Any]:
        return self.variables.snapshot()

    def get_variable_definitions(self) -> List[Dict[str, str]]:
        """Names and labels of every display value this session publishes."""
        return [dict(definition) for definition in VARIABLE_DEFINITIONS]

    def add_variable_listener(self, callback: Callable[[Dict[str, Any]], None]):
        self.variables.add_listener(callback)

    def add_cue_listener(self, callback: Callable[[CueAction, CueState], None]):
        self.cue_listeners.append(callback)

    def add_choice_listener(self, callback: Callable[[List[Dict[str, Any]]], None]):
        self.clips.add_choice_listener(callback)

    def add_status_listener(self, callback: Callable[[ConnectionState, str], None]):
        self.status_listeners.append(callback)

    def add_format_listener(self, callback: Callable[[bool], None]):
        self.format_listeners.append(callback)

    def arm_cue(self, with_stop: bool = True):
        self.cue.arm(with_stop)
        self._publish_variables()

    def reset_cue(self):
        self.cue.reset()
        self._publish_variables()

    def set_in_point(self) -> bool:
        result = self.cue.set_in_point(self.timecode.last.count_up)
        self._publish_variables()
        return result

    def set_out_point(self) -> bool:
        result = self.cue.set_out_point(self.timecode.last.count_up)
        self._publish_variables()
        return result

    async def fetch_clips(self) -> bool:
        slot_id = self.reconciler.transport.slot_id
        if slot_id is None:
            self.logger.debug("No active slot, clip fetch skipped")
            return False
        return await self.clips.refresh(slot_id)

    async def issue_command(self, kind: Union[CommandKind, str],
                            params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Build and send one user-initiated command.

        Returns the deck's response, or None when nothing was sent or the deck
        refused. Device errors are logged here and never raised.
        """
        try:
            kind = CommandKind(kind) if isinstance(kind, str) else kind
            params = dict(params or {})

            if not self.connection.connected:
                self.logger.debug(f"Deck not connected, {kind.value} not sent")
                return None

            builder = self._command_builders.get(kind)
            command = builder(params) if builder else Command(kind, params)
        except (TypeError, ValueError) as e:
            self.logger.warning(f"Rejected command {kind!r} {params!r}: {e}")
            return None

        if command is None:
            return None

        try:
            response = await self.connection.send_command(command)
        except DEVICE_ERRORS as e:
            self._log_device_error(f"{kind.value} failed", e)
            return None

        if kind == CommandKind.FORMAT:
            self._store_format_token(response, params)
        elif kind == CommandKind.SLOT_SELECT:
            await self._refresh_after_slot_change()

        return response

    def _build_record(self, params: Dict[str, Any]) -> Optional[Command]:
        mode = params.get('mode', 'plain')

        if mode == 'plain':
            return Command(CommandKind.RECORD)
        if mode == 'append':
            return Command(CommandKind.RECORD, {'append': True})
        if mode == 'name':
            name = str(params.get('name') or '')
            if not name:
                self.logger.warning("Named record without a name")
                return None
            return Command(CommandKind.RECORD, {'filename': name})
        if mode == 'timestamp':
            stamp = time.strftime('%Y%m%d_%H%M', time.localtime())
            prefix = str(params.get('prefix') or '')
            filename = f"{prefix}-{stamp}-" if prefix else f"{stamp}-"
            return Command(CommandKind.RECORD, {'filename': filename})
        if mode == 'custom':
            return Command(CommandKind.RECORD, {'filename': f"{self.config['record']['reel']}-"})

        self.logger.warning(f"Unknown record mode: {mode}")
        return None

    def _build_goto(self, params: Dict[str, Any]) -> Optional[Command]:
        if 'timecode' in params:
            timecode = str(params['timecode']).strip()
            if split_timecode(timecode) is None:
                self.logger.warning(f"Invalid goto timecode: {timecode}")
                return None
            return Command(CommandKind.GOTO, {'timecode': timecode})

        if 'clip_id' in params:
            return Command(CommandKind.GOTO, {'clip_id': int(params['clip_id'])})

        if 'relative' in params:
            offset = int(params['relative'])
            sign = '+' if offset >= 0 else '-'
            return Command(CommandKind.GOTO, {'clip_id': f"{sign}{abs(offset)}"})

        if 'clip_name' in params:
            clip = self.clips.find_by_name(self.reconciler.transport.slot_id, str(params['clip_name']))
            if clip is None:
                self.logger.warning(f"No clip named '{params['clip_name']}' in the active slot")
                return None
            return Command(CommandKind.GOTO, {'clip_id': clip.clip_id})

        if params.get('clip') in ('start', 'end'):
            return Command(CommandKind.GOTO, {'clip': params['clip']})

        self.logger.warning(f"Goto without a target: {params}")
        return None

    def _build_jog(self, params: Dict[str, Any]) -> Optional[Command]:
        timecode = str(params.get('timecode', '')).strip()
        if split_timecode(timecode) is None:
            self.logger.warning(f"Invalid jog timecode: {timecode}")
            return None
        sign = '-' if params.get('direction') in ('back', 'rewind', '-') else '+'
        return Command(CommandKind.JOG, {'timecode': f"{sign}{timecode}"})

    def _build_shuttle(self, params: Dict[str, Any]) -> Optional[Command]:
        limit = max_shuttle(self.model_id)
        speed = int(params.get('speed', 0))
        bounded = max(-limit, min(limit, speed))
        if bounded != speed:
            self.logger.debug(f"Shuttle speed {speed} limited to {bounded} for {self.model_id}")
        return Command(CommandKind.SHUTTLE, {'speed': bounded})

    def _build_slot_select(self, params: Dict[str, Any]) -> Optional[Command]:
        slot_id = params.get('slot_id', params.get('slot'))
        if slot_id is None:
            self.logger.warning("Slot select without a slot")
            return None
        return Command(CommandKind.SLOT_SELECT, {'slot_id': int(slot_id)})

    def _build_configuration(self, params: Dict[str, Any]) -> Optional[Command]:
        settings = {key: params[key] for key in ('video_input', 'audio_input', 'file_format')
                    if params.get(key) is not None}
        if not settings:
            self.logger.warning("Configuration command without settings")
            return None
        return Command(CommandKind.CONFIGURATION, settings)

    def _build_format(self, params: Dict[str, Any]) -> Optional[Command]:
        return Command(CommandKind.FORMAT, {'filesystem': params.get('filesystem', 'exFAT')})

    def _build_format_confirm(self, params: Dict[str, Any]) -> Optional[Command]:
        if self.format_token is None:
            self.logger.debug("Format confirm ignored: no format token held")
            return None
        token = self.format_token
        self._clear_format_token()
        return Command(CommandKind.FORMAT_CONFIRM, {'code': token})

    def _build_remote(self, params: Dict[str, Any]) -> Optional[Command]:
        return Command(CommandKind.REMOTE, {'enable': bool(params.get('enable', True))})

    def _store_format_token(self, response: Dict[str, Any], params: Dict[str, Any]):
        token = response.get('code')
        self.logger.debug(f"Format token: {token}")
        if not token:
            return

        self._clear_format_token(notify=False)
        self.format_token = str(token)
        timeout = params.get('timeout', self.config['format']['token_timeout'])
        self._format_expiry = asyncio.get_running_loop().call_later(
            float(timeout), self._expire_format_token
        )
        self._notify_format(True)

    def _expire_format_token(self):
        self._format_expiry = None
        if self.format_token is not None:
            self.logger.info("Format token expired")
            self.format_token = None
            self._notify_format(False)

    def _clear_format_token(self, notify: bool = True):
        if self._format_expiry is not None:
            self._format_expiry.cancel()
            self._format_expiry = None
        had_token = self.format_token is not None
        self.format_token = None
        if notify and had_token:
            self._notify_format(False)

    def _notify_format(self, ready: bool):
        for listener in list(self.format_listeners):
            listener(ready)

    async def update_config(self, config: Dict[str, Any]):
        """Apply a new configuration; switches timecode delivery or reconnects as needed."""
        new_config = merge_config(DEFAULT_CONFIG, config or {})
        old_device = self.config['device']
        new_device = new_config['device']
        old_mode = self.timecode_mode
        new_mode = new_config['timecode']['mode']

        reset_connection = (old_device['host'] != new_device['host']
                            or old_device['port'] != new_device['port'])

        self.config = new_config
        self.model_id = new_device['model_id']
        self._update_model(self.device_info.model)
        self.cue.set_fade_duration(new_config['cue']['fade_duration'])
        self.connection.command_timeout = new_device['command_timeout']
        self.connection.connect_timeout = new_device['connect_timeout']
        self.poller.max_failures = max(1, int(new_config['timecode']['max_poll_failures']))

        if reset_connection:
            self.logger.info(f"Deck address changed to {new_device['host']}:{new_device['port']}")
            self.disconnect()
            self.poller.interval_ms = clamp_poll_interval(new_config['timecode']['polling_interval'])
            if new_device['host']:
                try:
                    await self.connect()
                except DeviceConnectionError as e:
                    self.logger.error(f"Reconnect failed: {e}")
            return

        # Always stop the old path before the new one is enabled
        self.poller.stop()
        self.poller.set_interval(new_config['timecode']['polling_interval'])

        if old_mode != new_mode and self.connected and self.display_timecode_supported:
            if old_mode == 'notifications':
                await self._set_display_timecode_notifications(False)
            elif new_mode == 'notifications':
                await self._set_display_timecode_notifications(True)

        if self.connected:
            self._activate_timecode_path()

    async def _set_display_timecode_notifications(self, enabled: bool):
        try:
            await self.connection.send_command(
                Command(CommandKind.NOTIFY_SET, {'display_timecode': enabled})
            )
        except DEVICE_ERRORS as e:
            self._log_device_error("Display timecode subscription change failed", e)

    def get_health(self) -> Dict[str, Any]:
        status = self.connection.status
        return {
            'status': status.state.value,
            'model': self.device_info.model,
            'model_id': self.model_id,
            'timecode_mode': self.timecode_mode,
            'polling': self.poller.running,
            'poll_halted': self.poller.halted,
            'commands_sent': status.commands_sent,
            'commands_failed': status.commands_failed,
            'commands_timed_out': status.commands_timed_out,
            'orphaned_responses': status.orphaned_responses,
            'dropped_notifications': status.dropped_notifications,
            'coalesced_notifications': status.coalesced_notifications,
            'transport_errors': status.transport_errors,
            'cue': self.cue.get_metrics(),
        }
