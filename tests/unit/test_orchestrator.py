"""Tests for artphoto.core.orchestrator — task submission and polling.

The remote API is a ``FakeRemoteAPI`` behind ``httpx.MockTransport`` and
uploads land in a ``FakeArtifactStore``; the clock never really sleeps.
"""

from __future__ import annotations

import json

import pytest

from artphoto.core.errors import GenerationTimeout, RemoteAPIError, RemoteTaskFailed, ValidationError
from artphoto.core.history import TaskRecord, TaskState
from artphoto.core.orchestrator import TaskOrchestrator, sniff_content_type
from conftest import RESULT_ACTION, SUBMIT_ACTION, result_response, submit_ok

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 8


def _submit_body(fake_remote) -> dict:
    request = fake_remote.calls(SUBMIT_ACTION)[-1]
    return json.loads(request.content)


# ---------------------------------------------------------------------------
# Submission.
# ---------------------------------------------------------------------------


class TestPrepareImageUrls:
    """Test the image reference rules."""

    def test_single_image_gets_default_style(self, orchestrator: TaskOrchestrator, test_config):
        refs = orchestrator.prepare_image_urls(["https://img/a.jpg"])
        assert refs == ["https://img/a.jpg", test_config.default_style_image_url]

    def test_two_images_forwarded_unchanged(self, orchestrator: TaskOrchestrator):
        assert orchestrator.prepare_image_urls(["a", "b"]) == ["a", "b"]

    def test_truncated_to_ten(self, orchestrator: TaskOrchestrator):
        refs = orchestrator.prepare_image_urls([f"u{i}" for i in range(12)])
        assert refs == [f"u{i}" for i in range(10)]

    def test_empty_rejected(self, orchestrator: TaskOrchestrator):
        with pytest.raises(ValidationError, match="at least one image required"):
            orchestrator.prepare_image_urls([])

    def test_blank_entries_ignored(self, orchestrator: TaskOrchestrator):
        with pytest.raises(ValidationError):
            orchestrator.prepare_image_urls(["", "   "])


class TestSubmit:
    """Test TaskOrchestrator.submit()."""

    def test_returns_task_id_and_records_history(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(SUBMIT_ACTION, submit_ok("task-42"))
        task_id = orchestrator.submit("paint me", ["https://img/a.jpg"])

        assert task_id == "task-42"
        record = ledger.find_by_id("task-42")
        assert record is not None
        assert record.state is TaskState.SUBMITTED
        assert record.original_image_urls == ["https://img/a.jpg"]
        assert record.generated_image_urls == []
        assert record.prompt == "paint me"

    def test_submit_body(self, orchestrator, fake_remote, test_config):
        orchestrator.submit("paint me", ["https://img/a.jpg"])
        body = _submit_body(fake_remote)
        assert body["prompt"] == "paint me"
        assert body["image_urls"] == ["https://img/a.jpg", test_config.default_style_image_url]
        assert body["req_key"] == "jimeng_t2i_v40"
        assert body["scale"] == 0.9
        assert body["size"] == 4194304
        assert body["min_ratio"] == 0.33
        assert body["max_ratio"] == 3.0
        assert body["force_single"] is False

    def test_blank_prompt_uses_default(self, orchestrator, fake_remote, test_config):
        orchestrator.submit("   ", ["a", "b"])
        assert _submit_body(fake_remote)["prompt"] == test_config.default_prompt

    def test_validation_happens_before_remote_call(self, orchestrator, fake_remote):
        with pytest.raises(ValidationError):
            orchestrator.submit("x", [])
        assert fake_remote.calls() == []

    def test_missing_task_id(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(SUBMIT_ACTION, {"Result": {"code": 10000, "data": {}}})
        with pytest.raises(RemoteAPIError):
            orchestrator.submit("x", ["a"])
        assert ledger.all() == []

    def test_remote_rejection_writes_nothing(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(SUBMIT_ACTION, {"Result": {"code": 50411, "message": "risk"}})
        with pytest.raises(RemoteAPIError, match="risk"):
            orchestrator.submit("x", ["a"])
        assert ledger.all() == []


# ---------------------------------------------------------------------------
# Polling.
# ---------------------------------------------------------------------------


class TestPoll:
    """Test TaskOrchestrator.poll()."""

    def test_empty_task_id(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.poll("")

    def test_processing_leaves_ledger_untouched(self, orchestrator, fake_remote, ledger):
        orchestrator.submit("x", ["a"])
        before = ledger.path.read_text(encoding="utf-8")

        status = orchestrator.poll("task-1")

        assert status.state is TaskState.PROCESSING
        assert not status.is_terminal
        assert status.raw["Result"]["data"]["status"] == "generating"
        assert ledger.path.read_text(encoding="utf-8") == before

    def test_result_request_body(self, orchestrator, fake_remote):
        orchestrator.poll("task-1")
        body = json.loads(fake_remote.calls(RESULT_ACTION)[-1].content)
        assert body == {"task_id": "task-1", "req_key": "jimeng_t2i_v40"}

    def test_done_uploads_and_records(self, orchestrator, fake_remote, fake_store, ledger):
        orchestrator.submit("x", ["https://img/a.jpg"])
        fake_remote.queue(RESULT_ACTION, result_response("done", [PNG, JPEG]))

        status = orchestrator.poll("task-1")

        assert status.state is TaskState.DONE
        assert status.cached is False
        assert status.generated_image_urls == [
            "https://cdn.example.com/art-photos/1.png",
            "https://cdn.example.com/art-photos/2.jpeg",
        ]
        assert [content_type for _, content_type in fake_store.uploads] == ["image/png", "image/jpeg"]

        data = status.raw["Result"]["data"]
        assert "binary_data_base64" not in data
        assert data["uploaded_image_urls"] == status.generated_image_urls

        record = ledger.find_by_id("task-1")
        assert record.state is TaskState.DONE
        assert record.generated_image_urls == status.generated_image_urls
        assert record.original_image_urls == ["https://img/a.jpg"]
        assert len(ledger.all()) == 1

    def test_partial_upload_failure(self, orchestrator, fake_remote, fake_store):
        fake_store.fail_on = {2}
        fake_remote.queue(RESULT_ACTION, result_response("done", [PNG, JPEG, JPEG]))

        status = orchestrator.poll("task-1")

        assert status.state is TaskState.DONE
        assert status.generated_image_urls == [
            "https://cdn.example.com/art-photos/1.png",
            "https://cdn.example.com/art-photos/3.jpeg",
        ]

    def test_invalid_payload_skipped(self, orchestrator, fake_remote):
        response = result_response("done", [PNG])
        response["Result"]["data"]["binary_data_base64"].insert(0, "!!not-base64!!")
        fake_remote.queue(RESULT_ACTION, response)

        status = orchestrator.poll("task-1")

        assert status.generated_image_urls == ["https://cdn.example.com/art-photos/1.png"]

    def test_done_without_submit_record(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))
        orchestrator.poll("external")
        record = ledger.find_by_id("external")
        assert record.state is TaskState.DONE
        assert record.original_image_urls == []

    def test_second_poll_is_cached(self, orchestrator, fake_remote, fake_store):
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))
        first = orchestrator.poll("task-1")
        calls_after_first = len(fake_remote.calls())

        second = orchestrator.poll("task-1")

        assert second.cached is True
        assert second.state is TaskState.DONE
        assert second.generated_image_urls == first.generated_image_urls
        assert second.raw["Result"]["data"]["uploaded_image_urls"] == first.generated_image_urls
        assert len(fake_remote.calls()) == calls_after_first
        assert fake_store.calls == 1

    def test_cached_from_existing_history(self, orchestrator, fake_remote, ledger):
        ledger.append(TaskRecord(task_id="old", generated_image_urls=["https://cdn/x.jpeg"]))
        status = orchestrator.poll("old")
        assert status.cached is True
        assert status.generated_image_urls == ["https://cdn/x.jpeg"]
        assert fake_remote.calls() == []

    def test_failed_raises_and_records(self, orchestrator, fake_remote, ledger):
        orchestrator.submit("x", ["a"])
        fake_remote.queue(RESULT_ACTION, result_response("failed"))

        with pytest.raises(RemoteTaskFailed) as excinfo:
            orchestrator.poll("task-1")

        assert excinfo.value.task_id == "task-1"
        record = ledger.find_by_id("task-1")
        assert record.state is TaskState.FAILED
        assert record.original_image_urls == ["a"]

    def test_failed_task_stays_failed(self, orchestrator, fake_remote, ledger):
        orchestrator.submit("x", ["a"])
        fake_remote.queue(RESULT_ACTION, result_response("failed"))
        with pytest.raises(RemoteTaskFailed):
            orchestrator.poll("task-1")
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))

        with pytest.raises(RemoteTaskFailed):
            orchestrator.poll("task-1")

        assert len(fake_remote.calls(RESULT_ACTION)) == 1
        record = ledger.find_by_id("task-1")
        assert record.state is TaskState.FAILED
        assert record.generated_image_urls == []

    def test_done_without_uploads_is_not_marked_failed(self, orchestrator, fake_remote, fake_store, ledger):
        fake_store.fail_on = {1}
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))
        assert orchestrator.poll("task-1").generated_image_urls == []
        fake_remote.queue(RESULT_ACTION, result_response("failed"))

        with pytest.raises(RemoteTaskFailed):
            orchestrator.poll("task-1")

        assert ledger.find_by_id("task-1").state is TaskState.DONE

    def test_done_without_uploads_is_materialized_again(self, orchestrator, fake_remote, fake_store, ledger):
        fake_store.fail_on = {1}
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))
        orchestrator.poll("task-1")
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))

        status = orchestrator.poll("task-1")

        assert status.generated_image_urls == ["https://cdn.example.com/art-photos/2.jpeg"]
        record = ledger.find_by_id("task-1")
        assert record.state is TaskState.DONE
        assert record.generated_image_urls == status.generated_image_urls


class TestMalformedResponses:
    """Badly shaped remote responses surface as RemoteAPIError."""

    def test_result_data_not_an_object(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(RESULT_ACTION, {"Result": {"code": 10000, "data": ["x"]}})
        with pytest.raises(RemoteAPIError, match="unexpected response shape"):
            orchestrator.poll("task-1")
        assert ledger.all() == []

    def test_result_not_an_object(self, orchestrator, fake_remote):
        fake_remote.queue(RESULT_ACTION, {"Result": ["x"]})
        with pytest.raises(RemoteAPIError, match="unexpected response shape"):
            orchestrator.poll("task-1")

    def test_payloads_not_a_list(self, orchestrator, fake_remote, fake_store, ledger):
        response = result_response("done")
        response["Result"]["data"]["binary_data_base64"] = "QUJD"
        fake_remote.queue(RESULT_ACTION, response)

        with pytest.raises(RemoteAPIError, match="binary_data_base64"):
            orchestrator.poll("task-1")

        assert fake_store.calls == 0
        assert ledger.all() == []

    def test_submit_data_not_an_object(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(SUBMIT_ACTION, {"Result": {"code": 10000, "data": "task-1"}})
        with pytest.raises(RemoteAPIError, match="unexpected response shape"):
            orchestrator.submit("x", ["a"])
        assert ledger.all() == []


class TestWaitForResult:
    """Test the bounded polling loop."""

    def test_returns_when_done(self, orchestrator, fake_remote, fake_clock):
        fake_remote.queue(RESULT_ACTION, result_response("generating"))
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))

        status = orchestrator.wait_for_result("task-1", interval=2.0)

        assert status.state is TaskState.DONE
        assert len(fake_remote.calls(RESULT_ACTION)) == 2
        assert fake_clock.sleeps == [2.0]

    def test_times_out_after_max_attempts(self, orchestrator, fake_remote, fake_clock):
        with pytest.raises(GenerationTimeout) as excinfo:
            orchestrator.wait_for_result("task-1", interval=0, max_attempts=3)

        assert excinfo.value.attempts == 3
        assert excinfo.value.task_id == "task-1"
        assert len(fake_remote.calls(RESULT_ACTION)) == 3
        assert len(fake_clock.sleeps) == 2

    def test_times_out_on_deadline(self, orchestrator, fake_remote):
        with pytest.raises(GenerationTimeout) as excinfo:
            orchestrator.wait_for_result("task-1", interval=10, max_attempts=30, deadline=15)
        assert excinfo.value.attempts == 2
        assert len(fake_remote.calls(RESULT_ACTION)) == 2

    def test_timeout_is_a_timeout_error(self, orchestrator):
        with pytest.raises(TimeoutError):
            orchestrator.wait_for_result("task-1")

    def test_failure_propagates(self, orchestrator, fake_remote):
        fake_remote.queue(RESULT_ACTION, result_response("failed"))
        with pytest.raises(RemoteTaskFailed):
            orchestrator.wait_for_result("task-1")

    def test_remote_can_be_polled_after_timeout(self, orchestrator, fake_remote):
        with pytest.raises(GenerationTimeout):
            orchestrator.wait_for_result("task-1", max_attempts=1)
        fake_remote.queue(RESULT_ACTION, result_response("done", [JPEG]))
        assert orchestrator.poll("task-1").state is TaskState.DONE


class TestGenerate:
    """Test submit-and-wait."""

    def test_generate_end_to_end(self, orchestrator, fake_remote, ledger):
        fake_remote.queue(SUBMIT_ACTION, submit_ok("task-7"))
        fake_remote.queue(RESULT_ACTION, result_response("done", [PNG]))

        status = orchestrator.generate("", ["https://img/me.jpg"])

        assert status.task_id == "task-7"
        assert status.generated_image_urls == ["https://cdn.example.com/art-photos/1.png"]
        assert ledger.find_by_id("task-7").state is TaskState.DONE


class TestSniffContentType:
    """Test magic-byte detection."""

    @pytest.mark.parametrize(
        ("data", "expected"),
        [
            (PNG, "image/png"),
            (b"GIF89a....", "image/gif"),
            (b"RIFF....WEBP", "image/webp"),
            (JPEG, "image/jpeg"),
            (b"", "image/jpeg"),
        ],
    )
    def test_sniff(self, data, expected):
        assert sniff_content_type(data) == expected
