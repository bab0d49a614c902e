"""Image and articulation-video generation for tutor tool calls.

Both generators wrap a google-genai Client. Images come back inline and are
turned into data: URLs. Videos are long-running operations: the generator
polls until done, downloads the first result and stores it in a temporary
directory that lives as long as the process.
"""

import asyncio
import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

from google.genai import errors, types

from pcm_codec import encode_bytes

logger = logging.getLogger(__name__)

IMAGE_MODEL = "gemini-2.5-flash-image"
VIDEO_MODEL = "veo-3.1-fast-generate-preview"
VIDEO_POLL_INTERVAL = 5.0  # seconds between operation polls

# Returned by the video API when the selected key cannot see the model
ENTITY_NOT_FOUND = "Requested entity was not found"


class VideoGenerationError(Exception):
    """Video operation finished without a usable result."""


class CredentialInvalidError(Exception):
    """The API key was rejected; a new one must be selected."""


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{encode_bytes(self.data)}"


class ImageGenerator:
    """Text prompt -> inline image via generate_content."""

    def __init__(self, client, model=IMAGE_MODEL):
        self._client = client
        self.model = model

    async def generate(self, prompt: str) -> GeneratedImage | None:
        """Returns the first inline image part, or None if the model sent none."""
        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
        )
        for candidate in (response.candidates or [])[:1]:
            content = candidate.content
            for part in (content.parts if content and content.parts else []):
                inline = part.inline_data
                if inline and inline.data:
                    return GeneratedImage(data=inline.data,
                                          mime_type=inline.mime_type or "image/png")
        logger.info("Image response for %r carried no inline image", prompt)
        return None


class VideoGenerator:
    """Text prompt -> mouth-articulation clip via generate_videos.

    Args:
        client: google-genai Client
        model: Veo model name
        poll_interval: seconds between operation status polls
        media_dir: where downloaded clips go (a fresh temp dir by default)
    """

    def __init__(self, client, model=VIDEO_MODEL, poll_interval=VIDEO_POLL_INTERVAL,
                 media_dir=None):
        self._client = client
        self.model = model
        self.poll_interval = poll_interval
        self._media_dir = Path(media_dir) if media_dir else None

    @property
    def media_dir(self) -> Path:
        if self._media_dir is None:
            self._media_dir = Path(tempfile.mkdtemp(prefix="live-tutor-video-"))
        return self._media_dir

    async def generate(self, prompt: str) -> str:
        """Run the operation to completion and return a file:// URL.

        Raises:
            CredentialInvalidError: key rejected (entity not found)
            VideoGenerationError: finished without a download reference
        """
        try:
            operation = await self._client.aio.models.generate_videos(
                model=self.model,
                prompt=prompt,
                config=types.GenerateVideosConfig(
                    number_of_videos=1,
                    resolution="720p",
                    aspect_ratio="16:9",
                ),
            )
            polls = 0
            while not operation.done:
                await asyncio.sleep(self.poll_interval)
                operation = await self._client.aio.operations.get(operation)
                polls += 1
                logger.debug("Video operation poll %d: done=%s", polls, operation.done)

            if operation.error:
                raise VideoGenerationError(f"Video operation failed: {operation.error}")

            generated = operation.response.generated_videos if operation.response else None
            video = generated[0].video if generated else None
            if video is None or not (video.uri or video.video_bytes):
                raise VideoGenerationError("No download link in response.")

            data = video.video_bytes
            if not data:
                data = await self._client.aio.files.download(file=video)
        except errors.APIError as e:
            if _is_entity_not_found(e):
                raise CredentialInvalidError(str(e)) from e
            raise

        path = self.media_dir / f"{uuid.uuid4().hex}.mp4"
        path.write_bytes(data)
        logger.info("Video for %r saved to %s (%d bytes)", prompt, path, len(data))
        return path.as_uri()


def _is_entity_not_found(error) -> bool:
    return getattr(error, "code", None) == 404 or ENTITY_NOT_FOUND in str(error)
