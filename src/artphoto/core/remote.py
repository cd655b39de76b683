"""HTTP client for the remote generation API.

:class:`RemoteGenerationClient` turns an action name and a JSON body into a
signed ``POST /?Action=...&Version=...`` request, sends it through an
injected ``httpx.Client`` and maps every failure onto the core's error
taxonomy:

==============================================  ==============================
Response                                        Raised
==============================================  ==============================
401 with ``SignatureDoesNotMatch``              ``AuthError("signature mismatch")``
401 otherwise                                   ``AuthError("unauthorized")``
403                                             ``AuthError("forbidden")``
any other non-2xx                               ``RemoteAPIError(status_code)``
``ResponseMetadata.Error`` present              ``RemoteAPIError(message)``
``Result.code`` != the action's success code    ``RemoteAPIError(message)``
transport failure / non-JSON body               ``RemoteAPIError``
==============================================  ==============================

The transport is injected so tests can drive the client with
``httpx.MockTransport`` and no network access.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

import httpx

from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import AuthError, RemoteAPIError
from artphoto.core.signer import Signer

logger = logging.getLogger(__name__)

SIGNATURE_MISMATCH_CODE = "SignatureDoesNotMatch"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"


def _metadata_error(payload: Any) -> dict | None:
    if not isinstance(payload, dict):
        return None
    error = (payload.get("ResponseMetadata") or {}).get("Error")
    return error if isinstance(error, dict) and error else None


class RemoteGenerationClient:
    """Signs and sends actions to the remote generation API.

    Args:
        config: Application configuration (endpoint, version, signing mode,
            success codes).
        signer: Signer holding the API credentials.
        http_client: ``httpx.Client`` used for transport.
        timestamp_factory: Optional callable returning the signing timestamp;
            defaults to the current UTC time.
    """

    def __init__(
        self,
        config: ArtPhotoConfig,
        signer: Signer,
        http_client: httpx.Client,
        timestamp_factory: Callable[[], str] | None = None,
    ) -> None:
        self._config = config
        self._signer = signer
        self._http = http_client
        self._timestamp = timestamp_factory

        parts = urlsplit(config.endpoint)
        self._base_url = f"{parts.scheme}://{parts.netloc}"
        self._host = parts.netloc

    # -- Actions ------------------------------------------------------------

    def submit_task(self, body: dict) -> dict:
        """Send the submit action and return the decoded response."""
        return self.call(self._config.submit_action, body, self._config.submit_success_code)

    def get_result(self, task_id: str) -> dict:
        """Send the result action for *task_id* and return the decoded response."""
        body = {"task_id": task_id, "req_key": self._config.req_key}
        return self.call(self._config.result_action, body, self._config.result_success_code)

    # -- Transport ----------------------------------------------------------

    def call(self, action: str, body: dict, success_code: int | None = None) -> dict:
        """Sign and send *action* with a JSON *body*.

        Args:
            action: Remote action name.
            body: JSON-serialisable request body.
            success_code: Business ``Result.code`` that denotes success;
                ``None`` skips the business-code check.

        Returns:
            The decoded JSON response.

        Raises:
            AuthError: On 401/403 responses.
            RemoteAPIError: On any other failure.
        """
        payload = json.dumps(body, ensure_ascii=False).encode("utf-8")
        query = {"Action": action, "Version": self._config.api_version}
        timestamp = self._timestamp() if self._timestamp else None

        if self._config.signing_mode == "query":
            params = self._signer.presign("POST", "/", query, timestamp=timestamp)
            headers = {"Content-Type": JSON_CONTENT_TYPE}
        else:
            params = query
            headers = self._signer.sign_request(
                "POST",
                "/",
                query,
                {"Content-Type": JSON_CONTENT_TYPE},
                payload,
                host=self._host,
                timestamp=timestamp,
            )

        logger.debug("Calling %s (%d byte body).", action, len(payload))
        try:
            response = self._http.post(
                f"{self._base_url}/",
                params=params,
                headers=headers,
                content=payload,
                timeout=self._config.request_timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Network request for %s failed: %s", action, exc)
            raise RemoteAPIError(f"network request failed: {exc}") from exc

        result = self._decode(action, response)
        self._check_status(action, response.status_code, result)
        self._check_business(action, result, success_code)
        return result

    @staticmethod
    def _decode(action: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            if response.is_success:
                raise RemoteAPIError(
                    f"{action}: could not parse response body",
                    status_code=response.status_code,
                ) from None
            # Error responses are mapped on status alone.
            return None

    @staticmethod
    def _check_status(action: str, status_code: int, result: Any) -> None:
        if 200 <= status_code < 300:
            return

        error = _metadata_error(result) or {}
        logger.warning("%s returned HTTP %d: %s", action, status_code, error or result)
        if status_code == 401:
            if error.get("Code") == SIGNATURE_MISMATCH_CODE:
                detail = error.get("Message")
                message = f"signature mismatch: {detail}" if detail else "signature mismatch"
                raise AuthError(message, status_code=401)
            raise AuthError("unauthorized", status_code=401)
        if status_code == 403:
            raise AuthError("forbidden", status_code=403)
        raise RemoteAPIError(
            f"API call failed with status code {status_code}",
            status_code=status_code,
            code=error.get("Code"),
        )

    @staticmethod
    def _check_business(action: str, result: Any, success_code: int | None) -> None:
        if not isinstance(result, dict):
            raise RemoteAPIError(f"{action}: unexpected response shape", status_code=200)

        error = _metadata_error(result)
        if error:
            raise RemoteAPIError(
                f"API call failed: {error.get('Message') or error.get('Code')}",
                status_code=200,
                code=error.get("Code"),
            )

        if success_code is None:
            return
        envelope = result.get("Result") or {}
        if not isinstance(envelope, dict):
            raise RemoteAPIError(f"{action}: unexpected response shape", status_code=200)
        code = envelope.get("code")
        if code != success_code:
            message = envelope.get("message") or f"API call failed with error code {code}"
            raise RemoteAPIError(message, status_code=200, code=code)
