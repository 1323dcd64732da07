"""Shared payload builders and a manual clock for the test suite."""

from datetime import datetime, timedelta

TUTORIAL_TIMES = [(0, 15), (20, 40), (45, 70), (80, 100)]
TUTORIAL_SCORES = [8, 6, 9, 5]


def make_moment(start=0, end=15, score=8, **overrides):
    moment = {
        "startTime": start,
        "endTime": end,
        "summary": "Speaker reveals the twist",
        "suggestedHook": "You won't believe this",
        "viralScore": score,
        "captions": [
            {"type": "hook", "text": "Wait for it"},
            {"type": "value", "text": "Three tips in 15 seconds"},
            {"type": "emotion", "text": "This made my day"},
        ],
    }
    moment.update(overrides)
    return moment


def make_tutorial_payload():
    return {
        "keyMoments": [
            make_moment(start, end, score) for (start, end), score in zip(TUTORIAL_TIMES, TUTORIAL_SCORES)
        ],
        "overallSummary": "A tutorial with four highlight moments",
        "totalDuration": 120.0,
    }


class FakeClock:
    """Manually advanced clock for lease-expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
