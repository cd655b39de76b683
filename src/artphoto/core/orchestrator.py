"""Task lifecycle: submit, poll and materialize remote generation jobs.

:class:`TaskOrchestrator` owns every :class:`~artphoto.core.history.TaskRecord`
and drives it through the state machine::

    submitted -> processing -> done
                            -> failed

``done`` and ``failed`` are terminal: a failed task is answered from the
ledger, and a done record only changes when none of its images uploaded.

Key Responsibilities
--------------------
- **Submission** -- validate the image references, enforce the content +
  style reference rule, send the signed submit action and record the new
  task in the ledger *before* returning its id, so a crash before the first
  poll does not lose the mapping from task id to inputs.
- **Polling** -- one signed status request per :meth:`TaskOrchestrator.poll`
  call.  Non-terminal states leave the ledger untouched.
- **At-most-once materialization** -- once a task's images have been
  uploaded, later polls are answered from the ledger without any remote
  call, so artifacts are never re-fetched or re-uploaded.
- **Partial uploads** -- each payload is uploaded sequentially; a payload
  that fails to decode or upload is logged and skipped.
- **Bounded waiting** -- :meth:`TaskOrchestrator.wait_for_result` polls on a
  fixed interval under an attempt count and a wall-clock deadline, with
  injectable ``clock`` and ``sleep`` so tests run without real delays.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from artphoto.core.artifact_store import DEFAULT_CONTENT_TYPE, ArtifactStore
from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import (
    GenerationTimeout,
    RemoteAPIError,
    RemoteTaskFailed,
    UploadError,
    ValidationError,
)
from artphoto.core.history import HistoryLedger, TaskRecord, TaskState, utc_now_iso
from artphoto.core.remote import RemoteGenerationClient

logger = logging.getLogger(__name__)

REMOTE_DONE = "done"
REMOTE_FAILED = "failed"

# Magic-byte prefixes used to label decoded payloads; JPEG otherwise.
_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"RIFF", "image/webp"),
)


def sniff_content_type(data: bytes) -> str:
    """Guess the image content type of *data* from its leading bytes."""
    for prefix, content_type in _SIGNATURES:
        if data.startswith(prefix):
            return content_type
    return DEFAULT_CONTENT_TYPE


@dataclass
class TaskStatus:
    """Outcome of a single poll.

    Attributes:
        task_id: Remote task identifier.
        state: Current lifecycle state.
        generated_image_urls: Uploaded result URLs (``done`` only).
        cached: ``True`` when answered from the ledger without a remote call.
        raw: Remote response with binary payloads stripped and the uploaded
            URLs added under ``Result.data.uploaded_image_urls``.
    """

    task_id: str
    state: TaskState
    generated_image_urls: list[str] = field(default_factory=list)
    cached: bool = False
    raw: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def _result_data(result: dict) -> dict:
    """Return ``Result.data`` of a remote response.

    Raises:
        RemoteAPIError: If ``Result`` or ``Result.data`` is present but not
            an object.
    """
    envelope = result.get("Result") or {}
    if not isinstance(envelope, dict):
        raise RemoteAPIError("unexpected response shape: Result is not an object", status_code=200)
    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise RemoteAPIError("unexpected response shape: Result.data is not an object", status_code=200)
    return data


def synthesize_done_response(urls: Sequence[str], success_code: int) -> dict:
    """Build the remote-shaped response returned for cached results."""
    return {
        "ResponseMetadata": {},
        "Result": {
            "code": success_code,
            "data": {"status": REMOTE_DONE, "uploaded_image_urls": list(urls)},
            "message": "Success",
        },
    }


class TaskOrchestrator:
    """Drives generation tasks from submission to materialized artifacts.

    Args:
        config: Application configuration.
        remote: Signed client for the remote generation API.
        artifact_store: Destination for decoded result images.
        ledger: History ledger recording task outcomes.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Sleep function in seconds (injectable for tests).
    """

    def __init__(
        self,
        config: ArtPhotoConfig,
        remote: RemoteGenerationClient,
        artifact_store: ArtifactStore,
        ledger: HistoryLedger,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._remote = remote
        self._store = artifact_store
        self._ledger = ledger
        self._clock = clock
        self._sleep = sleep

    # -- Submission ---------------------------------------------------------

    def prepare_image_urls(self, image_urls: Sequence[str]) -> list[str]:
        """Return the image references forwarded to the remote API.

        At most ``max_image_refs`` references are kept.  The remote model
        needs a content reference and a style reference, so when fewer than
        ``min_image_refs`` remain the default style image is appended.

        Raises:
            ValidationError: If *image_urls* is empty.
        """
        refs = [url for url in image_urls if url and url.strip()]
        if not refs:
            raise ValidationError("at least one image required")

        forwarded = refs[: self._config.max_image_refs]
        if len(forwarded) < self._config.min_image_refs:
            forwarded.append(self._config.default_style_image_url)
        return forwarded

    def build_submit_body(self, prompt: str, image_urls: Sequence[str]) -> dict:
        """Return the JSON body of the submit action."""
        return {
            "prompt": prompt,
            "image_urls": list(image_urls),
            "req_key": self._config.req_key,
            "scale": self._config.scale,
            "size": self._config.size,
            "min_ratio": self._config.min_ratio,
            "max_ratio": self._config.max_ratio,
            "force_single": self._config.force_single,
        }

    def submit(self, prompt: str | None, image_urls: Sequence[str]) -> str:
        """Submit a generation task and record it in the ledger.

        Args:
            prompt: Generation prompt; blank means the configured default.
            image_urls: Caller's image references, content image first.

        Returns:
            The remote task id.

        Raises:
            ValidationError: If no image reference is given.
            AuthError: If the remote API rejects the credentials.
            RemoteAPIError: On any other remote failure.
        """
        forwarded = self.prepare_image_urls(image_urls)
        prompt = (prompt or "").strip() or self._config.default_prompt

        logger.info("Submitting generation task with %d image reference(s).", len(forwarded))
        result = self._remote.submit_task(self.build_submit_body(prompt, forwarded))

        data = _result_data(result)
        task_id = str(data.get("task_id") or "")
        if not task_id:
            raise RemoteAPIError("remote response carried no task id", status_code=200)

        now = utc_now_iso()
        self._ledger.append(
            TaskRecord(
                task_id=task_id,
                original_image_urls=list(image_urls),
                generated_image_urls=[],
                state=TaskState.SUBMITTED,
                prompt=prompt,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Task %s submitted.", task_id)
        return task_id

    # -- Polling ------------------------------------------------------------

    def poll(self, task_id: str) -> TaskStatus:
        """Check *task_id* once and materialize its results when done.

        Args:
            task_id: Remote task identifier.

        Returns:
            The current :class:`TaskStatus`.

        Raises:
            ValidationError: If *task_id* is empty.
            AuthError: If the remote API rejects the credentials.
            RemoteAPIError: On any other remote failure.
            RemoteTaskFailed: If the remote task failed.
        """
        if not task_id:
            raise ValidationError("task id is required")

        existing = self._ledger.find_by_id(task_id)
        if existing is not None and existing.generated_image_urls:
            logger.info("Task %s already materialized; answering from history.", task_id)
            return TaskStatus(
                task_id=task_id,
                state=TaskState.DONE,
                generated_image_urls=list(existing.generated_image_urls),
                cached=True,
                raw=synthesize_done_response(
                    existing.generated_image_urls, self._config.result_success_code
                ),
            )

        if existing is not None and existing.state is TaskState.FAILED:
            logger.info("Task %s already failed; answering from history.", task_id)
            raise RemoteTaskFailed(task_id)

        result = self._remote.get_result(task_id)
        data = _result_data(result)
        status = data.get("status")

        if status == REMOTE_FAILED:
            self._record_terminal(task_id, existing, TaskState.FAILED, [])
            logger.warning("Task %s failed remotely.", task_id)
            raise RemoteTaskFailed(task_id)

        if status != REMOTE_DONE:
            logger.debug("Task %s still running (remote status %r).", task_id, status)
            return TaskStatus(
                task_id=task_id,
                state=TaskState.PROCESSING,
                raw=self._passthrough(result, None),
            )

        payloads = data.get("binary_data_base64") or []
        if not isinstance(payloads, list):
            raise RemoteAPIError(
                "unexpected response shape: binary_data_base64 is not a list", status_code=200
            )
        urls = self._materialize(task_id, payloads)
        self._record_terminal(task_id, existing, TaskState.DONE, urls)
        return TaskStatus(
            task_id=task_id,
            state=TaskState.DONE,
            generated_image_urls=urls,
            raw=self._passthrough(result, urls),
        )

    def wait_for_result(
        self,
        task_id: str,
        interval: float | None = None,
        max_attempts: int | None = None,
        deadline: float | None = None,
    ) -> TaskStatus:
        """Poll *task_id* until it reaches a terminal state.

        The loop waits ``interval`` seconds between polls (not before the
        first one).  It gives up after ``max_attempts`` polls or once
        ``deadline`` seconds have elapsed, whichever comes first.  Giving up
        does not cancel the remote job; a later :meth:`poll` can still pick
        up its results.

        Args:
            task_id: Remote task identifier.
            interval: Seconds between polls (default ``poll_interval``).
            max_attempts: Maximum number of polls (default ``poll_max_attempts``).
            deadline: Wall-clock budget in seconds (default ``poll_deadline``).

        Returns:
            The terminal ``done`` :class:`TaskStatus`.

        Raises:
            GenerationTimeout: If the budget is exhausted.
            RemoteTaskFailed: If the remote task failed.
        """
        interval = self._config.poll_interval if interval is None else interval
        max_attempts = self._config.poll_max_attempts if max_attempts is None else max_attempts
        deadline = self._config.poll_deadline if deadline is None else deadline

        started = self._clock()
        attempts = 0
        while attempts < max_attempts:
            if attempts and self._clock() - started >= deadline:
                break
            attempts += 1
            status = self.poll(task_id)
            if status.is_terminal:
                logger.info("Task %s finished after %d poll(s).", task_id, attempts)
                return status
            if attempts < max_attempts:
                self._sleep(interval)

        logger.warning("Task %s timed out after %d poll(s).", task_id, attempts)
        raise GenerationTimeout(task_id, attempts)

    def generate(
        self,
        prompt: str | None,
        image_urls: Sequence[str],
        **wait_options: Any,
    ) -> TaskStatus:
        """Submit a task and block until it is done (see :meth:`wait_for_result`)."""
        task_id = self.submit(prompt, image_urls)
        return self.wait_for_result(task_id, **wait_options)

    # -- Helpers ------------------------------------------------------------

    def _materialize(self, task_id: str, payloads: Sequence[str]) -> list[str]:
        urls: list[str] = []
        total = len(payloads)
        for index, encoded in enumerate(payloads, start=1):
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError, TypeError) as exc:
                logger.error("Task %s: payload %d/%d is not valid base64: %s", task_id, index, total, exc)
                continue
            try:
                url = self._store.put(data, sniff_content_type(data))
            except UploadError as exc:
                logger.error("Task %s: upload %d/%d failed: %s", task_id, index, total, exc)
                continue
            logger.info("Task %s: uploaded image %d/%d to %s", task_id, index, total, url)
            urls.append(url)
        return urls

    def _record_terminal(
        self,
        task_id: str,
        existing: TaskRecord | None,
        state: TaskState,
        urls: list[str],
    ) -> None:
        # Terminal records never change, except a done record whose uploads
        # all failed, which may be materialized again.
        if existing is not None and existing.state.is_terminal:
            retry = (
                existing.state is TaskState.DONE
                and not existing.generated_image_urls
                and state is TaskState.DONE
            )
            if not retry:
                logger.warning(
                    "Task %s is already %s; not recording %s.",
                    task_id,
                    existing.state.value,
                    state.value,
                )
                return

        now = utc_now_iso()
        if existing is None:
            record = TaskRecord(
                task_id=task_id,
                generated_image_urls=urls,
                state=state,
                created_at=now,
                updated_at=now,
            )
        else:
            record = existing.model_copy(
                update={"generated_image_urls": urls, "state": state, "updated_at": now}
            )
        self._ledger.upsert(record)

    @staticmethod
    def _passthrough(result: dict, urls: list[str] | None) -> dict:
        # Rebuilt rather than deep-copied so the base64 payloads are not duplicated.
        raw = dict(result)
        envelope = raw.get("Result")
        if isinstance(envelope, dict):
            envelope = dict(envelope)
            data = envelope.get("data")
            if isinstance(data, dict):
                data = {key: value for key, value in data.items() if key != "binary_data_base64"}
                if urls is not None:
                    data["uploaded_image_urls"] = urls
                envelope["data"] = data
            raw["Result"] = envelope
        return raw
