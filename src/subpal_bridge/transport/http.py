"""
REST client for the subtitle service — used only by the background context.
"""

import logging
from typing import Any, Optional

import httpx

from subpal_bridge.errors import ApiError, TimeoutError, ValidationError
from subpal_bridge.settings import BridgeSettings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000/api"


class SubmissionApi:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": "subpal-bridge/0.1.0", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: BridgeSettings, transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SubmissionApi":
        return cls(settings.api_base_url, settings.api_token, settings.api_timeout, transport)

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap `{ "data": <actual_data> }` responses; anything else passes through."""
        if isinstance(json_data, dict) and json_data.get("data") is not None:
            return json_data["data"]
        return json_data

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        message = f"API request failed with status {resp.status_code}"
        code = "api_error"
        details: dict[str, Any] = {}
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            details = body
            err = body.get("error")
            if isinstance(err, dict):
                message = err.get("message") or message
                code = err.get("code") or code
            elif isinstance(err, str):
                message = err
        logger.error("API error %s: %s", resp.status_code, message)
        raise ApiError(message, resp.status_code, code, details or None)

    async def post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            resp = await self._client.post(path, json=body, headers=self._auth_headers())
        except httpx.TimeoutException:
            raise TimeoutError(f"API request timed out: POST {path}")
        except httpx.TransportError as e:
            raise ApiError(f"API request failed: {e}", 0, "network_error")
        self._raise_for_status(resp)
        try:
            return self._unwrap(resp.json())
        except ValueError:
            return {"success": True, "message": "Response received but could not be parsed as JSON."}

    async def submit_vote(self, vote: dict[str, Any]) -> Any:
        video_id = vote.get("videoID")
        timestamp = vote.get("timestamp")
        vote_type = vote.get("voteType")
        if not video_id or isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) \
                or vote_type not in ("upvote", "downvote"):
            raise ValidationError("Missing or invalid parameters for vote submission")

        body: dict[str, Any] = {"videoID": video_id, "timestamp": timestamp, "voteType": vote_type}
        if vote.get("originalSubtitle"):
            body["originalSubtitle"] = vote["originalSubtitle"]

        translation_id = vote.get("translationID")
        if translation_id:
            return await self.post(f"/translations/{translation_id}/vote", body)
        if "originalSubtitle" not in body:
            logger.warning("Vote without translationID or originalSubtitle; the API may reject it")
        return await self.post("/votes", body)

    async def submit_translation(self, submission: dict[str, Any]) -> Any:
        video_id = submission.get("videoId")
        timestamp = submission.get("timestamp")
        if not video_id or isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) \
                or not submission.get("original") or not submission.get("translation") \
                or not submission.get("languageCode"):
            raise ValidationError("Missing or invalid parameters for translation submission")

        return await self.post("/translations", {
            "videoID": video_id,
            "timestamp": timestamp,
            "originalSubtitle": submission["original"],
            "suggestedSubtitle": submission["translation"],
            "languageCode": submission["languageCode"],
            "submissionReason": submission.get("submissionReason") or "",
        })

    async def close(self) -> None:
        await self._client.aclose()
