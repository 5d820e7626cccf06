from lockdown.status import (
    INDICATOR_UNLOCKED_TEXT,
    IndicatorIcon,
    LockdownPresence,
    StatusSurface,
)
from conftest import Notices


def test_indicator_replaces_itself_in_place():
    notices = Notices()
    surface = StatusSurface(notify=notices)

    surface.show_indicator("Timer lock until 12:00:05.")
    surface.show_indicator("Timer lock until 12:00:05.")
    surface.show_indicator("Scheduled lock until 06:30.")

    assert len(notices.calls) == 2
    assert notices.calls[0][2]["replace_id"] is None
    assert notices.calls[1][2]["replace_id"] == 42
    assert surface.indicator_text == "Scheduled lock until 06:30."


def test_hide_indicator_sends_expiring_unlocked_variant():
    notices = Notices()
    surface = StatusSurface(notify=notices)

    surface.hide_indicator()
    assert notices.calls == []

    surface.show_indicator("locked")
    surface.hide_indicator()

    _, body, kwargs = notices.calls[-1]
    assert body == INDICATOR_UNLOCKED_TEXT
    assert kwargs["icon"] == IndicatorIcon.UNLOCKED.value
    assert kwargs["replace_id"] == 42
    assert kwargs["expire_ms"] == 10_000
    assert not surface.indicator_on


def test_presence_released_on_error():
    notices = Notices()
    surface = StatusSurface(notify=notices)

    try:
        with LockdownPresence(surface) as presence:
            presence.acquire()
            assert surface.indicator_on
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert not presence.held
    assert not surface.indicator_on


def test_presence_is_idempotent():
    notices = Notices()
    presence = LockdownPresence(StatusSurface(notify=notices))

    presence.acquire()
    presence.acquire()
    presence.release()
    presence.release()

    assert len(notices.calls) == 2
