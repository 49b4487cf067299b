"""
Tests for utterance boundary detection.
"""

from conftest import FakeScheduler

from src.callagent.boundary import UtteranceBoundaryDetector
from src.callagent.events import SafetyTimerFired, TranscriptFragment


def make_detector(scheduler: FakeScheduler, min_chars: int = 2):
    posted = []
    detector = UtteranceBoundaryDetector(
        timeout_seconds=1.0,
        min_chars=min_chars,
        post=posted.append,
        call_later=scheduler,
    )
    return detector, posted


def final(text: str, end: bool = False) -> TranscriptFragment:
    return TranscriptFragment(text=text, is_final=True, is_end_of_speech=end)


def interim(text: str) -> TranscriptFragment:
    return TranscriptFragment(text=text, is_final=False)


class TestProviderEndOfSpeech:
    def test_final_with_end_of_speech_finalizes_immediately(self, scheduler):
        detector, _ = make_detector(scheduler)

        utterance = detector.on_fragment(final("I want to buy a house", end=True))

        assert utterance is not None
        assert utterance.text == "I want to buy a house"
        assert not detector.pending
        assert not detector.timer_armed

    def test_fragments_accumulate_until_boundary(self, scheduler):
        detector, _ = make_detector(scheduler)

        assert detector.on_fragment(final("I want")) is None
        assert detector.on_fragment(interim("to se")) is None
        utterance = detector.on_fragment(final("to sell", end=True))

        assert utterance.text == "I want to sell"

    def test_bare_end_of_speech_finalizes_pending_text(self, scheduler):
        detector, _ = make_detector(scheduler)
        detector.on_fragment(final("My budget is 500k"))

        utterance = detector.on_end_of_speech()

        assert utterance.text == "My budget is 500k"

    def test_end_of_speech_without_text_is_ignored(self, scheduler):
        detector, _ = make_detector(scheduler)

        assert detector.on_end_of_speech() is None
        assert detector.on_fragment(TranscriptFragment(text="", is_final=True, is_end_of_speech=True)) is None
        assert not detector.timer_armed

    def test_interim_only_never_finalizes(self, scheduler):
        detector, posted = make_detector(scheduler)

        detector.on_fragment(interim("I want to sell"))

        assert not detector.pending
        assert scheduler.armed == []
        assert posted == []


class TestSafetyTimer:
    def test_timer_finalizes_when_provider_stays_silent(self, scheduler):
        detector, posted = make_detector(scheduler)
        detector.on_fragment(final("I want to sell"))

        assert scheduler.fire_armed() == 1
        utterance = detector.on_timer(posted[-1])

        assert utterance.text == "I want to sell"

    def test_every_fragment_rearms_the_timer(self, scheduler):
        detector, _ = make_detector(scheduler)
        detector.on_fragment(final("I want"))
        detector.on_fragment(interim("to"))
        detector.on_fragment(final("to sell"))

        assert len(scheduler.handles) == 3
        assert len(scheduler.armed) == 1

    def test_stale_timer_after_provider_finalization_is_ignored(self, scheduler):
        detector, posted = make_detector(scheduler)
        detector.on_fragment(final("I want to buy"))
        handle = scheduler.armed[0]

        assert detector.on_fragment(final("a house", end=True)) is not None

        # The timer callback raced the cancel and still posted its event.
        scheduler.fire(handle)
        assert detector.on_timer(posted[-1]) is None

    def test_timer_from_older_generation_is_ignored(self, scheduler):
        detector, posted = make_detector(scheduler)
        detector.on_fragment(final("Hello"))
        old = scheduler.armed[0]
        detector.on_fragment(final("there"))

        scheduler.fire(old)
        assert detector.on_timer(posted[-1]) is None
        assert detector.pending_text == "Hello there"

    def test_unknown_generation_is_ignored(self, scheduler):
        detector, _ = make_detector(scheduler)

        assert detector.on_timer(SafetyTimerFired(generation=99)) is None


class TestShortUtterances:
    def test_short_text_does_not_finalize_on_end_of_speech(self, scheduler):
        detector, posted = make_detector(scheduler, min_chars=3)

        assert detector.on_fragment(final("a", end=True)) is None
        assert detector.pending
        assert detector.timer_armed

    def test_short_text_discarded_when_timer_fires(self, scheduler):
        detector, posted = make_detector(scheduler, min_chars=3)
        detector.on_fragment(final("a", end=True))

        scheduler.fire_armed()
        assert detector.on_timer(posted[-1]) is None
        assert detector.discarded == 1
        assert not detector.pending

    def test_short_text_can_grow_into_a_turn(self, scheduler):
        detector, _ = make_detector(scheduler, min_chars=3)
        detector.on_fragment(final("a", end=True))

        utterance = detector.on_fragment(final("house please", end=True))

        assert utterance.text == "a house please"


def test_cancel_drops_text_and_timer(scheduler):
    detector, _ = make_detector(scheduler)
    detector.on_fragment(final("I want to sell"))

    detector.cancel()

    assert not detector.pending
    assert not detector.timer_armed
    assert scheduler.armed == []
