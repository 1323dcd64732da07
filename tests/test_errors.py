"""Tests for the tagged error taxonomy."""

from repurpose_ai.errors import (
    CapabilityError,
    CommitConflictError,
    ErrorKind,
    FatalConfigError,
    PipelineError,
    TransientQueueError,
    TransientStoreError,
    ValidationError,
)


class TestErrorKinds:
    def test_every_error_is_tagged(self):
        errors = [
            (TransientQueueError("x"), ErrorKind.QUEUE, True),
            (TransientStoreError("x"), ErrorKind.STORE, True),
            (CapabilityError("x"), ErrorKind.CAPABILITY, True),
            (ValidationError("viralScore", "x", 0), ErrorKind.VALIDATION, True),
            (CommitConflictError("v"), ErrorKind.COMMIT_CONFLICT, False),
            (FatalConfigError("x"), ErrorKind.FATAL_CONFIG, False),
        ]
        for error, kind, retriable in errors:
            assert isinstance(error, PipelineError)
            assert error.kind is kind
            assert error.retriable is retriable

    def test_str_includes_kind(self):
        assert str(TransientQueueError("busy")) == "[queue] busy"


class TestRecords:
    def test_validation_record_names_field_and_moment(self):
        error = ValidationError("endTime", "must be greater than startTime", 2)

        assert error.message == "keyMoments[2].endTime: must be greater than startTime"
        record = error.to_record()
        assert record["kind"] == "validation"
        assert record["field"] == "endTime"
        assert record["moment_index"] == 2

    def test_payload_level_validation_message(self):
        error = ValidationError("keyMoments", "is required")
        assert error.message == "keyMoments: is required"
        assert error.to_record()["moment_index"] is None

    def test_capability_record_flags_timeout(self):
        record = CapabilityError("too slow", timed_out=True).to_record()
        assert record == {
            "kind": "capability",
            "retriable": True,
            "message": "too slow",
            "timed_out": True,
        }

    def test_conflict_record_carries_ids(self):
        record = CommitConflictError("video-1", "analysis-1").to_record()
        assert record["video_id"] == "video-1"
        assert record["analysis_id"] == "analysis-1"
