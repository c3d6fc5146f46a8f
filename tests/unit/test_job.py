"""
Unit tests for the Job model.
"""

from claimqueue.types.job import Job, is_failed_record


class TestJob:
    """Tests for Job."""

    def test_user_fields_are_payload(self):
        """Test that non-reserved fields are kept as the payload."""
        job = Job.coerce({"type": "echo", "message": "hi", "priority": 2})

        assert job.payload == {"type": "echo", "message": "hi"}
        assert job.priority == 2
        assert job.get("message") == "hi"
        assert job.get("missing", "default") == "default"

    def test_metadata_uses_wire_names(self):
        """Test that lifecycle fields round-trip under their stored names."""
        job = Job.from_record(
            "key-1",
            {"id": "job-1", "startedAt": 10, "failedAt": 20, "error": "boom"},
        )

        assert job.started_at == 10
        assert job.failed_at == 20
        assert job.to_record() == {
            "id": "job-1",
            "startedAt": 10,
            "failedAt": 20,
            "error": "boom",
        }

    def test_from_record_takes_id_from_key(self):
        """Test that a record without an id is identified by its key."""
        job = Job.from_record("-Nabc", {"message": "hi"})
        assert job.id == "-Nabc"

    def test_from_record_keeps_own_id(self):
        """Test that a record's own id wins over its key."""
        job = Job.from_record("-Nabc", {"id": "mine"})
        assert job.id == "mine"

    def test_pending_record_drops_metadata(self):
        """Test that re-enqueueing resets every lifecycle field."""
        job = Job.from_record(
            "k",
            {
                "id": "k",
                "message": "hi",
                "priority": 1,
                "startedAt": 1,
                "succeededAt": 2,
                "error": "old",
            },
        )

        assert job.to_pending_record() == {"id": "k", "message": "hi", "priority": 1}

    def test_coerce_returns_same_job(self):
        """Test that coercing a Job is a no-op."""
        job = Job(id="a")
        assert Job.coerce(job) is job

    def test_is_failed(self):
        """Test the failed-job rule on models and raw records."""
        assert Job(failedAt=1).is_failed is True
        assert Job(failedAt=1, succeededAt=2).is_failed is False
        assert Job(startedAt=1).is_failed is False

        assert is_failed_record({"failedAt": 1}) is True
        assert is_failed_record({"failedAt": 1, "succeededAt": 2}) is False
        assert is_failed_record({"startedAt": 1}) is False
        assert is_failed_record(None) is False
