import re
import copy
import asyncio
import pytest

from hdc_connection import CommandKind, ConnectionState
from hdc_cue_engine import CueAction
from hdc_session import DeviceSession
from hdc_state import TransportStatus
from hdc_variables import NO_VALUE
from mock_hyperdeck import reject


@pytest.fixture
def session(deck, deck_config, logger):
    return DeviceSession(deck, deck_config, logger)


async def start(session):
    await session.connect()
    return session


async def push(session, deck, kind, payload):
    deck.push(kind, payload)
    await session.connection.drain()


@pytest.mark.asyncio
async def test_connect_subscribes_then_fetches_everything(session, deck):
    await start(session)

    assert deck.sent_kinds() == [
        CommandKind.NOTIFY_SET,
        CommandKind.DEVICE_INFO,
        CommandKind.SLOT_INFO,
        CommandKind.SLOT_INFO,
        CommandKind.TRANSPORT_INFO,
        CommandKind.CONFIGURATION_GET,
        CommandKind.CLIPS_COUNT,
        CommandKind.CLIPS_GET,
    ]
    assert deck.sent[0].params == {"transport": True, "slot": True, "configuration": True, "display_timecode": True}
    assert session.status == ConnectionState.OK
    assert session.get_slot_state(2).volume_name == "Disk 2"
    assert session.get_configuration_state().video_input == "SDI"
    assert session.get_clip(1, "Interview").clip_id == 2
    assert session.get_clip(1, 1).name == "Intro"
    session.disconnect()


@pytest.mark.asyncio
async def test_model_is_detected_on_connect(session):
    await start(session)
    assert session.model_id == "hdStudioMini"
    session.disconnect()


@pytest.mark.asyncio
async def test_old_protocol_does_not_subscribe_display_timecode(deck, deck_config, logger):
    deck.info = {"model": "HyperDeck Studio", "protocolVersion": 1.06}
    session = await start(DeviceSession(deck, deck_config, logger))

    assert "display_timecode" not in deck.sent[0].params
    session.disconnect()


@pytest.mark.asyncio
async def test_initial_fetch_errors_are_not_fatal(deck, deck_config, logger):
    deck.responses[CommandKind.DEVICE_INFO] = reject(100, "syntax error")
    session = await start(DeviceSession(deck, deck_config, logger))

    assert session.status == ConnectionState.OK
    assert CommandKind.TRANSPORT_INFO not in deck.sent_kinds()
    session.disconnect()


@pytest.mark.asyncio
async def test_display_timecode_notification_updates_variables(session, deck):
    await start(session)

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "01:00:10:15"})

    variables = session.get_variables()
    assert variables["timecodeHMSF"] == "01:00:10:15"
    assert variables["timecodeHMS"] == "01:00:10"
    assert (variables["timecodeH"], variables["timecodeM"], variables["timecodeS"], variables["timecodeF"]) == \
        ("01", "00", "10", "15")
    session.disconnect()


@pytest.mark.asyncio
async def test_count_down_for_active_clip(session, deck):
    await start(session)

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:15:00"})

    assert session.get_computed_timecode().count_down.hmsf == "00:00:14:29"
    assert session.get_variables()["countdownTimecodeHMSF"] == "00:00:14:29"
    session.disconnect()


@pytest.mark.asyncio
async def test_transport_variables(session, deck):
    await start(session)
    await push(session, deck, "notify.transport", {"status": "play", "speed": 100})

    variables = session.get_variables()
    assert variables["status"] == "Play"
    assert variables["speed"] == 100
    assert variables["clipId"] == 1
    assert variables["recordingTime"] == "01:00:00"
    assert variables["clipCount"] == 2

    await push(session, deck, "notify.transport", {"clipId": None})
    assert session.get_variables()["clipId"] == NO_VALUE
    session.disconnect()


@pytest.mark.asyncio
async def test_slot_notification_refetches_transport_and_clips(session, deck):
    await start(session)
    deck.sent.clear()

    await push(session, deck, "notify.slot", {"slotId": 2, "status": "empty"})

    assert deck.sent_kinds() == [CommandKind.TRANSPORT_INFO, CommandKind.CLIPS_COUNT, CommandKind.CLIPS_GET]
    assert session.get_slot_state(2).recording_time == 3600
    assert len(session.clips.get_clips(2)) == 2
    session.disconnect()


@pytest.mark.asyncio
async def test_out_point_stop_fires_once(session, deck):
    await start(session)
    actions = []
    session.add_cue_listener(lambda action, state: actions.append(action))

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:20:00"})
    assert session.set_out_point() is True
    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:10:00"})
    session.arm_cue(with_stop=True)

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:19:10"})
    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:20:00"})
    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:20:00"})
    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:20:05"})
    await session.wait_for_pending()

    assert actions == [CueAction.FADE, CueAction.STOP]
    assert deck.sent_kinds().count(CommandKind.STOP) == 1
    assert session.get_cue_state().stop_armed is False
    assert session.cue.metrics[CueAction.STOP].success_count == 1
    session.disconnect()


@pytest.mark.asyncio
async def test_failed_auto_stop_is_not_rearmed(session, deck):
    deck.responses[CommandKind.STOP] = reject(109, "out of range")
    await start(session)

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:05:00"})
    session.set_out_point()
    session.arm_cue(with_stop=True)
    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:05:00"})
    await session.wait_for_pending()

    assert session.cue.metrics[CueAction.STOP].failure_count == 1
    assert session.get_cue_state().stop_armed is False
    session.disconnect()


@pytest.mark.asyncio
async def test_format_confirm_without_token_sends_nothing(session, deck):
    await start(session)
    deck.sent.clear()

    assert await session.issue_command("format_confirm") is None
    assert deck.sent == []
    session.disconnect()


@pytest.mark.asyncio
async def test_format_prepare_then_confirm_consumes_token(session, deck):
    await start(session)
    ready = []
    session.add_format_listener(ready.append)

    await session.issue_command(CommandKind.FORMAT, {"filesystem": "HFS+"})
    assert session.format_token == "fmt-1234"

    await session.issue_command(CommandKind.FORMAT_CONFIRM)
    assert deck.last_sent(CommandKind.FORMAT_CONFIRM).params == {"code": "fmt-1234"}
    assert session.format_token is None

    await session.issue_command(CommandKind.FORMAT_CONFIRM)
    assert deck.sent_kinds().count(CommandKind.FORMAT_CONFIRM) == 1
    assert ready == [True, False]
    session.disconnect()


@pytest.mark.asyncio
async def test_format_token_expires(session, deck):
    await start(session)

    await session.issue_command(CommandKind.FORMAT, {"timeout": 0.01})
    await asyncio.sleep(0.05)

    assert session.format_token is None
    assert await session.issue_command(CommandKind.FORMAT_CONFIRM) is None
    session.disconnect()


@pytest.mark.asyncio
async def test_record_variants(session, deck):
    await start(session)

    await session.issue_command(CommandKind.RECORD, {"mode": "timestamp", "prefix": "show"})
    assert re.match(r"^show-\d{8}_\d{4}-$", deck.last_sent(CommandKind.RECORD).params["filename"])

    await session.issue_command(CommandKind.RECORD, {"mode": "custom"})
    assert deck.last_sent(CommandKind.RECORD).params == {"filename": "B002-"}

    await session.issue_command(CommandKind.RECORD, {"mode": "append"})
    assert deck.last_sent(CommandKind.RECORD).params == {"append": True}
    session.disconnect()


@pytest.mark.asyncio
async def test_goto_variants(session, deck):
    await start(session)

    await session.issue_command(CommandKind.GOTO, {"clip_name": "Interview"})
    assert deck.last_sent(CommandKind.GOTO).params == {"clip_id": 2}

    await session.issue_command(CommandKind.GOTO, {"relative": -2})
    assert deck.last_sent(CommandKind.GOTO).params == {"clip_id": "-2"}

    await session.issue_command(CommandKind.GOTO, {"timecode": "00:01:00:00"})
    assert deck.last_sent(CommandKind.GOTO).params == {"timecode": "00:01:00:00"}

    sent = len(deck.sent)
    assert await session.issue_command(CommandKind.GOTO, {"clip_name": "Nope"}) is None
    assert await session.issue_command(CommandKind.GOTO, {"timecode": "1 minute"}) is None
    assert len(deck.sent) == sent
    session.disconnect()


@pytest.mark.asyncio
async def test_shuttle_is_bounded_by_model(session, deck):
    await start(session)

    await session.issue_command(CommandKind.SHUTTLE, {"speed": 5000})
    assert deck.last_sent(CommandKind.SHUTTLE).params == {"speed": 1600}
    session.disconnect()


@pytest.mark.asyncio
async def test_slot_select_refreshes_transport_and_clips(session, deck):
    await start(session)
    deck.sent.clear()

    await session.issue_command(CommandKind.SLOT_SELECT, {"slot": 2})

    assert deck.sent_kinds() == [
        CommandKind.SLOT_SELECT, CommandKind.TRANSPORT_INFO, CommandKind.CLIPS_COUNT, CommandKind.CLIPS_GET
    ]
    session.disconnect()


@pytest.mark.asyncio
async def test_command_errors_are_logged_not_raised(session, deck):
    deck.responses[CommandKind.PLAY] = reject(111, "remote control disabled")
    await start(session)

    assert await session.issue_command(CommandKind.PLAY, {"speed": 100}) is None
    session.disconnect()


@pytest.mark.asyncio
async def test_commands_are_not_sent_while_disconnected(session, deck):
    assert await session.issue_command(CommandKind.STOP) is None
    assert deck.sent == []


@pytest.mark.asyncio
async def test_polling_and_notifications_are_exclusive(session, deck, deck_config):
    await start(session)
    assert session.poller.running is False

    polling = copy.deepcopy(deck_config)
    polling["timecode"]["mode"] = "polling"
    await session.update_config(polling)

    assert deck.last_sent(CommandKind.NOTIFY_SET).params == {"display_timecode": False}
    assert session.poller.running is True

    await push(session, deck, "notify.displayTimecode", {"displayTimecode": "00:00:42:00"})
    assert session.get_transport_state().display_timecode != "00:00:42:00"

    await asyncio.sleep(0.1)
    assert session.poller.poll_count >= 1

    poller_states = []

    def record_notify(command):
        poller_states.append(session.poller.running)
        return {}

    deck.responses[CommandKind.NOTIFY_SET] = record_notify
    await session.update_config(copy.deepcopy(deck_config))

    assert poller_states == [False]
    assert deck.last_sent(CommandKind.NOTIFY_SET).params == {"display_timecode": True}
    assert session.poller.running is False
    session.disconnect()


@pytest.mark.asyncio
async def test_polling_mode_starts_poller_on_connect(deck, deck_config, logger):
    deck_config["timecode"]["mode"] = "polling"
    session = await start(DeviceSession(deck, deck_config, logger))

    assert "display_timecode" not in deck.sent[0].params
    assert session.poller.running is True
    session.disconnect()
    assert session.poller.running is False


@pytest.mark.asyncio
async def test_link_drop_sets_error_and_stops_polling(deck, deck_config, logger):
    deck_config["timecode"]["mode"] = "polling"
    session = await start(DeviceSession(deck, deck_config, logger))
    statuses = []
    session.add_status_listener(lambda state, message: statuses.append(state))

    deck.drop()

    assert session.status == ConnectionState.ERROR
    assert session.poller.running is False
    assert statuses == [ConnectionState.ERROR]


@pytest.mark.asyncio
async def test_fetch_clips_uses_active_slot(session, deck):
    await start(session)
    deck.sent.clear()

    assert await session.fetch_clips() is True
    assert deck.sent_kinds() == [CommandKind.CLIPS_COUNT, CommandKind.CLIPS_GET]
    assert session.get_clip_choices()[0] == {"id": 1, "label": "Intro"}
    session.disconnect()


@pytest.mark.asyncio
async def test_jog_and_remote(session, deck):
    await start(session)

    await session.issue_command(CommandKind.JOG, {"timecode": "00:00:01:00", "direction": "back"})
    assert deck.last_sent(CommandKind.JOG).params == {"timecode": "-00:00:01:00"}

    await session.issue_command(CommandKind.JOG, {"timecode": "00:00:00:05"})
    assert deck.last_sent(CommandKind.JOG).params == {"timecode": "+00:00:00:05"}

    await session.issue_command("remote", {"enable": False})
    assert deck.last_sent(CommandKind.REMOTE).params == {"enable": False}

    assert await session.issue_command(CommandKind.CONFIGURATION, {}) is None
    await session.issue_command(CommandKind.CONFIGURATION, {"video_input": "HDMI"})
    assert deck.last_sent(CommandKind.CONFIGURATION).params == {"video_input": "HDMI"}
    session.disconnect()


@pytest.mark.asyncio
async def test_link_drop_during_initial_fetch_leaves_polling_off(deck, deck_config, logger):
    deck_config["timecode"]["mode"] = "polling"
    session = DeviceSession(deck, deck_config, logger)
    statuses = []
    session.add_status_listener(lambda state, message: statuses.append(state))

    def drop_mid_fetch(command):
        deck.drop()
        return {}

    deck.responses[CommandKind.TRANSPORT_INFO] = drop_mid_fetch
    await session.connect()
    await asyncio.sleep(0.05)

    assert session.status == ConnectionState.ERROR
    assert session.poller.running is False
    assert statuses == [ConnectionState.ERROR]
    assert CommandKind.CLIPS_COUNT not in deck.sent_kinds()


@pytest.mark.asyncio
async def test_transport_delta_survives_timecode_burst_behind_slot_refresh(session, deck):
    deck.response_delay = 0.01
    await start(session)

    deck.push("notify.slot", {"slotId": 2, "status": "mounted"})
    deck.push("notify.transport", {"status": "record"})
    for n in range(300):
        deck.push("notify.displayTimecode", {"displayTimecode": f"00:00:{n // 30:02d}:{n % 30:02d}"})
    await session.connection.drain()

    transport = session.get_transport_state()
    assert transport.status == TransportStatus.RECORD
    assert transport.display_timecode == "00:00:09:29"
    assert session.connection.status.dropped_notifications == 0
    session.disconnect()


@pytest.mark.asyncio
async def test_malformed_commands_are_logged_not_raised(session, deck):
    await start(session)
    sent = len(deck.sent)

    assert await session.issue_command("rewind_to_start") is None
    assert await session.issue_command(CommandKind.GOTO, {"clip_id": "third"}) is None
    assert await session.issue_command(CommandKind.GOTO, {"relative": "next"}) is None
    assert await session.issue_command(CommandKind.SHUTTLE, {"speed": "fast"}) is None
    assert await session.issue_command(CommandKind.SLOT_SELECT, {"slot": "left"}) is None
    assert len(deck.sent) == sent
    session.disconnect()


@pytest.mark.asyncio
async def test_format_token_kept_when_confirm_cannot_be_sent(session, deck):
    await start(session)
    await session.issue_command(CommandKind.FORMAT)

    deck.close()
    assert await session.issue_command(CommandKind.FORMAT_CONFIRM) is None

    assert session.format_token == "fmt-1234"
    assert CommandKind.FORMAT_CONFIRM not in deck.sent_kinds()
    session.disconnect()


@pytest.mark.asyncio
async def test_transport_error_is_reported_without_state_change(session, deck):
    await start(session)
    reports = []
    session.add_status_listener(lambda state, message: reports.append((state, message)))

    deck.emit_error(ValueError("malformed frame"))

    assert reports == [(ConnectionState.OK, "malformed frame")]
    assert session.get_health()["transport_errors"] == 1
    session.disconnect()


@pytest.mark.asyncio
async def test_published_values_are_all_defined(session):
    await start(session)

    names = {definition["name"] for definition in session.get_variable_definitions()}

    assert set(session.get_variables()) <= names
    assert "countdownTimecodeHMSF" in names
    session.disconnect()
