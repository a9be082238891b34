from hdc_state import (
    DeviceInfo, SlotStatus, StateReconciler, TransportStatus, normalize_key
)


def test_normalize_key_variants():
    assert normalize_key("slotId") == "slot_id"
    assert normalize_key("slot id") == "slot_id"
    assert normalize_key("slot_id") == "slot_id"
    assert normalize_key("displayTimecode") == "display_timecode"


def test_slot_notification_keeps_absent_fields(logger):
    reconciler = StateReconciler(logger)
    reconciler.merge_slot({"slot_id": 1, "status": "empty", "recordingTime": 0})

    changed = reconciler.apply_notification("notify.slot", {"slotId": 1, "status": "mounted"})

    slot = reconciler.get_slot(1)
    assert slot.status == SlotStatus.MOUNTED
    assert slot.recording_time == 0
    assert changed == {"status"}


def test_sparse_transport_update_changes_only_present_fields(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {
        "status": "play", "speed": 100, "slotId": 1, "clipId": 3,
        "loop": True, "videoFormat": "1080p25",
    })

    changed = reconciler.apply_notification("notify.transport", {"speed": 200})

    transport = reconciler.get_transport()
    assert changed == {"speed"}
    assert transport.speed == 200
    assert transport.status == TransportStatus.PLAY
    assert transport.clip_id == 3
    assert transport.loop is True
    assert transport.video_format == "1080p25"


def test_duplicate_update_reports_no_change(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {"status": "stopped"})
    assert reconciler.apply_notification("transport", {"status": "stopped"}) == set()


def test_unknown_status_keeps_previous_value(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {"status": "record"})

    changed = reconciler.apply_notification("transport", {"status": "teleporting", "speed": 0})

    assert reconciler.transport.status == TransportStatus.RECORD
    assert "status" not in changed


def test_unknown_fields_are_ignored(logger):
    reconciler = StateReconciler(logger)
    changed = reconciler.apply_notification("transport", {"inputVideoFormat": "1080i50", "speed": 50})
    assert changed == {"speed"}


def test_transport_naming_unknown_slot_creates_placeholder(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {"slotId": 2})

    slot = reconciler.get_slot(2)
    assert slot is not None
    assert slot.status == SlotStatus.EMPTY
    assert reconciler.active_slot().slot_id == 2


def test_none_slot_id_clears_active_slot(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {"slotId": 1, "clipId": 4})
    reconciler.apply_notification("transport", {"clipId": "none"})
    assert reconciler.transport.clip_id is None
    assert reconciler.transport.slot_id == 1


def test_listeners_run_after_each_merge(logger):
    reconciler = StateReconciler(logger)
    calls = []
    reconciler.add_listener(lambda kind, changed: calls.append((kind, changed)))

    reconciler.apply_notification("notify.displayTimecode", {"displayTimecode": "00:00:01:00"})
    reconciler.apply_notification("notify.slot", {"slotId": 1, "recordingTime": 120})

    assert calls == [
        ("display_timecode", {"display_timecode"}),
        ("slot", {"recording_time"}),
    ]


def test_unknown_notification_kind_is_ignored(logger):
    reconciler = StateReconciler(logger)
    calls = []
    reconciler.add_listener(lambda kind, changed: calls.append(kind))

    assert reconciler.apply_notification("notify.remote", {"enabled": True}) == set()
    assert calls == []


def test_slot_update_without_id_is_dropped(logger):
    reconciler = StateReconciler(logger)
    assert reconciler.apply_notification("slot", {"status": "mounted"}) == set()
    assert reconciler.slots == {}


def test_configuration_merge(logger):
    reconciler = StateReconciler(logger)
    reconciler.replace_configuration({"audioInput": "XLR", "videoInput": "SDI", "fileFormat": "H.264"})
    reconciler.apply_notification("notify.configuration", {"videoInput": "HDMI"})

    configuration = reconciler.get_configuration()
    assert configuration.video_input == "HDMI"
    assert configuration.audio_input == "XLR"


def test_getters_return_copies(logger):
    reconciler = StateReconciler(logger)
    reconciler.apply_notification("transport", {"speed": 100})

    snapshot = reconciler.get_transport()
    snapshot.speed = -100
    assert reconciler.transport.speed == 100


def test_device_info_from_payload():
    info = DeviceInfo.from_payload({"model": "HyperDeck Extreme 8K HDR", "protocolVersion": "1.12", "slotCount": 2})
    assert info.model == "HyperDeck Extreme 8K HDR"
    assert info.protocol_version == 1.12
    assert info.slot_count == 2
