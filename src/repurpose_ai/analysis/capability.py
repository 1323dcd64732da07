"""Seam to the external analysis capability.

The capability turns a video reference into a raw payload
(``{"keyMoments": [...], "overallSummary": ..., "totalDuration": ...}``).
It is a black box: it may be slow, may fail, and may return malformed data.
The pipeline only ever calls it through ``invoke_with_timeout``.
"""

import hashlib
import importlib
import inspect
import logging
import random
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict

from ..errors import CapabilityError, FatalConfigError

logger = logging.getLogger(__name__)


class AnalysisCapability(ABC):
    """Produces raw candidate moments for one video."""

    @abstractmethod
    def analyze(self, video_ref: str) -> Dict[str, Any]:
        pass


class CallableCapability(AnalysisCapability):
    """Adapts a plain ``fn(video_ref) -> dict`` to the capability interface."""

    def __init__(self, fn: Callable[[str], Dict[str, Any]]):
        self.fn = fn

    def analyze(self, video_ref: str) -> Dict[str, Any]:
        return self.fn(video_ref)

    def __repr__(self) -> str:
        return f"CallableCapability({getattr(self.fn, '__name__', self.fn)!r})"


class DemoCapability(AnalysisCapability):
    """Deterministic synthetic payloads for local runs and smoke tests.

    The same video id always yields the same moments: 4 non-overlapping
    windows, scores 1-10, one caption of each type.
    """

    HOOKS = [
        "Wait for the end...",
        "Nobody expected this",
        "This changes everything",
        "You have to see this",
    ]

    def __init__(self, moments: int = 4, window_s: float = 20.0):
        self.moments = moments
        self.window_s = window_s

    def analyze(self, video_ref: str) -> Dict[str, Any]:
        seed = int(hashlib.sha256(video_ref.encode()).hexdigest()[:16], 16)
        rng = random.Random(seed)

        key_moments = []
        cursor = 0.0
        for i in range(self.moments):
            start = cursor + rng.uniform(0.0, 5.0)
            end = start + rng.uniform(5.0, self.window_s)
            cursor = end
            hook = self.HOOKS[i % len(self.HOOKS)]
            key_moments.append(
                {
                    "startTime": round(start, 2),
                    "endTime": round(end, 2),
                    "summary": f"Moment {i + 1} of {video_ref}",
                    "suggestedHook": hook,
                    "viralScore": rng.randint(1, 10),
                    "captions": [
                        {"type": "hook", "text": hook},
                        {"type": "value", "text": f"Key takeaway #{i + 1}"},
                        {"type": "emotion", "text": "This one hits different"},
                    ],
                }
            )

        return {
            "keyMoments": key_moments,
            "overallSummary": f"Synthetic analysis for {video_ref}",
            "totalDuration": round(cursor + rng.uniform(0.0, 30.0), 2),
        }


def load_capability(target: str) -> AnalysisCapability:
    """Resolve ``'demo'`` or ``'package.module:attribute'`` to a capability.

    The attribute may be a capability instance, a capability class (built
    with no arguments) or a plain function.

    Raises:
        FatalConfigError: Target cannot be imported or is not usable
    """
    if target == "demo":
        return DemoCapability()

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise FatalConfigError(f"capability target must be 'module:attribute', got {target!r}")

    try:
        module = importlib.import_module(module_name)
        obj = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise FatalConfigError(f"cannot load capability {target!r}: {e}") from e

    if isinstance(obj, AnalysisCapability):
        return obj
    if inspect.isclass(obj) and issubclass(obj, AnalysisCapability):
        return obj()
    if callable(obj):
        return CallableCapability(obj)
    raise FatalConfigError(f"capability {target!r} is not callable")


def invoke_with_timeout(
    capability: AnalysisCapability,
    video_ref: str,
    timeout_s: float,
) -> Dict[str, Any]:
    """Run ``capability.analyze`` on its own daemon thread and wait at most ``timeout_s``.

    A timed-out call cannot be interrupted; its thread finishes in the
    background and the result is discarded. Abandoned calls never hold a
    slot that a later job needs.

    Raises:
        CapabilityError: The capability raised, timed out, or returned a
            non-mapping
    """
    future: Future = Future()

    def run():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(capability.analyze(video_ref))
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(target=run, name=f"capability-{video_ref[:16]}", daemon=True)
    thread.start()
    try:
        payload = future.result(timeout=timeout_s)
    except FutureTimeoutError as e:
        logger.warning("Abandoning analysis of %s after %.1fs", video_ref, timeout_s)
        raise CapabilityError(
            f"analysis of {video_ref} timed out after {timeout_s}s", timed_out=True
        ) from e
    except CapabilityError:
        raise
    except Exception as e:
        raise CapabilityError(f"analysis of {video_ref} failed: {type(e).__name__}: {e}") from e

    if not isinstance(payload, dict):
        raise CapabilityError(
            f"analysis of {video_ref} returned {type(payload).__name__}, expected an object"
        )
    return payload
