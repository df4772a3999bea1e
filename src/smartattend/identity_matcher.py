"""
Identity Matcher clients
========================
Face recognition is delegated to an external service that maps a photo to a
stable person id. LuxandMatcher talks to the Luxand Cloud API; MockMatcher
stands in when no API token is configured and is refused in production.
"""

import aiohttp
import asyncio
import base64
import binascii
import hashlib
import logging
import re
from typing import Optional, Union

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")

ImageData = Union[str, bytes]


class MatchResult:
    """Outcome of a recognize/register call."""

    def __init__(
        self,
        success: bool,
        face_id: Optional[str] = None,
        confidence: Optional[float] = None,
        error: Optional[str] = None
    ):
        self.success = success
        self.face_id = face_id
        self.confidence = confidence
        self.error = error

    def __repr__(self):
        return f"<MatchResult(success={self.success}, face_id={self.face_id}, confidence={self.confidence})>"


def decode_image(image_data: ImageData) -> Union[str, bytes]:
    """
    Normalise an image payload.

    https:// URLs are passed through; base64 strings (with or without a
    data URL prefix) become bytes.
    """
    if isinstance(image_data, bytes):
        return image_data
    if image_data.startswith("https://"):
        return image_data
    raw = DATA_URL_PREFIX.sub("", image_data.strip())
    try:
        return base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Image data is not valid base64") from e


class IdentityMatcher:
    """Interface shared by the matcher implementations."""

    mock = False

    async def recognize(self, image_data: ImageData) -> MatchResult:
        raise NotImplementedError

    async def register(self, user_id: str, image_data: ImageData, name: Optional[str] = None) -> MatchResult:
        raise NotImplementedError

    async def close(self):
        pass


class LuxandMatcher(IdentityMatcher):
    """
    Async client for the Luxand Cloud face API.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.luxand.cloud",
        collection: Optional[str] = None,
        timeout: float = 30.0
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip('/')
        self.collection = collection
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"token": self.api_token}
            )
        return self.session

    async def close(self):
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    @staticmethod
    def _add_photo(data: aiohttp.FormData, field: str, image_data: ImageData):
        photo = decode_image(image_data)
        if isinstance(photo, str):
            data.add_field(field, photo)
        else:
            data.add_field(field, photo, filename='photo.jpg', content_type='image/jpeg')

    async def recognize(self, image_data: ImageData) -> MatchResult:
        """
        Search enrolled persons for the face in the photo.

        Returns:
            MatchResult with the best match's person UUID and similarity
        """
        try:
            session = await self._get_session()
            data = aiohttp.FormData()
            self._add_photo(data, 'photo', image_data)

            async with session.post(f"{self.base_url}/photo/search/v2", data=data) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Recognition failed: {response.status} - {error_text}")
                    return MatchResult(False, error=f"Matcher error: {response.status}")
                matches = await response.json()

            if isinstance(matches, list) and matches:
                best = matches[0]
                person_uuid = best.get("uuid")
                if person_uuid:
                    return MatchResult(True, face_id=person_uuid, confidence=float(best.get("similarity") or 0.0))

            return MatchResult(False, error="Face not recognized")

        except ValueError as e:
            return MatchResult(False, error=str(e))
        except asyncio.TimeoutError:
            logger.error("Recognition request timed out")
            return MatchResult(False, error="Request timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Connection error: {e}")
            return MatchResult(False, error="Connection failed")

    async def register(self, user_id: str, image_data: ImageData, name: Optional[str] = None) -> MatchResult:
        """
        Enroll a new person with one photo.

        Returns:
            MatchResult carrying the new person UUID
        """
        try:
            session = await self._get_session()
            data = aiohttp.FormData()
            data.add_field('name', name or user_id)
            self._add_photo(data, 'photos', image_data)
            data.add_field('store', '1')
            if self.collection:
                data.add_field('collections', self.collection)

            async with session.post(f"{self.base_url}/v2/person", data=data) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Registration failed: {response.status} - {error_text}")
                    return MatchResult(False, error=f"Matcher error: {response.status}")
                body = await response.json()

            if body.get("status") == "success" and body.get("uuid"):
                return MatchResult(True, face_id=body["uuid"])
            return MatchResult(False, error=body.get("message") or "Person registration failed")

        except ValueError as e:
            return MatchResult(False, error=str(e))
        except asyncio.TimeoutError:
            logger.error("Registration request timed out")
            return MatchResult(False, error="Request timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Connection error: {e}")
            return MatchResult(False, error="Connection failed")


class MockMatcher(IdentityMatcher):
    """
    Development stand-in for the face service.

    The face id is a digest of the photo bytes, so enrolling a sample and
    presenting the same sample later resolves to the same id. Any other
    sample resolves to an id nobody owns.
    """

    mock = True

    def __init__(self, allow: bool = True):
        self.allow = allow

    @staticmethod
    def face_id_for(image_data: ImageData) -> str:
        photo = decode_image(image_data)
        if isinstance(photo, str):
            photo = photo.encode("utf-8")
        return "mock-face-" + hashlib.sha256(photo).hexdigest()[:32]

    def _refuse(self) -> MatchResult:
        logger.error("Mock identity matcher refused: no face service configured in production")
        return MatchResult(False, error="Identity matcher not configured")

    async def recognize(self, image_data: ImageData) -> MatchResult:
        if not self.allow:
            return self._refuse()
        try:
            face_id = self.face_id_for(image_data)
        except ValueError as e:
            return MatchResult(False, error=str(e))
        logger.warning("[MOCK MATCHER] Recognition answered without a face service")
        return MatchResult(True, face_id=face_id, confidence=0.95)

    async def register(self, user_id: str, image_data: ImageData, name: Optional[str] = None) -> MatchResult:
        if not self.allow:
            return self._refuse()
        try:
            face_id = self.face_id_for(image_data)
        except ValueError as e:
            return MatchResult(False, error=str(e))
        logger.warning(f"[MOCK MATCHER] Registered {user_id} without a face service")
        return MatchResult(True, face_id=face_id)


def build_matcher(
    api_token: Optional[str],
    base_url: str = "https://api.luxand.cloud",
    collection: Optional[str] = None,
    timeout: float = 30.0,
    production: bool = False
) -> IdentityMatcher:
    """Luxand client when a token is configured, otherwise the mock."""
    if api_token:
        return LuxandMatcher(api_token, base_url=base_url, collection=collection, timeout=timeout)
    if production:
        logger.error("LUXAND_API_TOKEN not configured; face login disabled in production")
    else:
        logger.warning("LUXAND_API_TOKEN not configured, using mock recognition")
    return MockMatcher(allow=not production)
