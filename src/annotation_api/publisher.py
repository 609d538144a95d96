"""
AWS publisher for generated speech and uploaded images.

This module provides functionality for:
- Synthesizing speech for annotation text with Amazon Polly
- Uploading audio and image bytes to S3 and returning public URLs
- Deleting previously published objects

The bucket is configured via AWS_S3_BUCKET_NAME. When no bucket is configured
build_publisher() returns None and the speech/image features report the
publisher as unavailable.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import BackendUnavailable, EmptyBody
from .utils import image_extension_for, unix_millis

logger = logging.getLogger(__name__)

# Amazon Polly rejects SynthesizeSpeech requests over 3000 characters
POLLY_MAX_CHARS = 3000

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_SPACES = re.compile(r"[ \t]+")


def clean_text_for_speech(text: str) -> str:
    """
    Prepare annotation text for speech synthesis.

    Paragraph breaks become sentence pauses, remaining line breaks become
    spaces and every sentence is terminated with punctuation.
    """
    text = _SPACES.sub(" ", text.strip())
    text = text.replace("\n\n", ". ").replace("\n", " ")

    sentences = []
    for sentence in text.split("."):
        sentence = sentence.strip()
        if not sentence:
            continue
        if not sentence.endswith(("!", "?")):
            sentence += "."
        sentences.append(sentence)
    return " ".join(sentences)


def split_for_speech(text: str, limit: int = POLLY_MAX_CHARS) -> List[str]:
    """Split text into chunks of at most `limit` characters on sentence boundaries."""
    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_END.split(text):
        while len(sentence) > limit:
            cut = sentence.rfind(" ", 0, limit)
            if cut <= 0:
                cut = limit
            head, sentence = sentence[:cut].strip(), sentence[cut:].strip()
            if current:
                chunks.append(current)
                current = ""
            chunks.append(head)
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) > limit:
            chunks.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class AWSPublisher:
    """
    Publishes speech and image assets to S3, synthesizing speech with Polly.

    Attributes:
        bucket_name: Target S3 bucket
        voice_id: Polly voice (default "Joanna")
        engine: Polly engine, "neural" or "standard"
    """

    def __init__(
        self,
        s3_client: Any,
        polly_client: Any,
        bucket_name: str,
        voice_id: str = "Joanna",
        engine: str = "neural",
    ) -> None:
        self._s3 = s3_client
        self._polly = polly_client
        self.bucket_name = bucket_name
        self.voice_id = voice_id or "Joanna"
        self.engine = "neural" if engine == "neural" else "standard"

    @property
    def base_url(self) -> str:
        return f"https://{self.bucket_name}.s3.amazonaws.com/"

    def url_for_key(self, key: str) -> str:
        return f"{self.base_url}{key}"

    def key_for_url(self, url: Optional[str]) -> Optional[str]:
        """Return the object key for a URL in this bucket, or None for foreign URLs."""
        if not url or not url.startswith(self.base_url):
            return None
        return url[len(self.base_url):] or None

    def synthesize_speech(self, text: str) -> bytes:
        """
        Synthesize MP3 audio for text.

        Long text is split into Polly-sized chunks and the MP3 streams are
        concatenated.
        """
        chunks = split_for_speech(clean_text_for_speech(text))
        if not chunks:
            raise EmptyBody("annotation text has no speakable content")

        audio = bytearray()
        for chunk in chunks:
            try:
                result = self._polly.synthesize_speech(
                    Text=chunk,
                    OutputFormat="mp3",
                    VoiceId=self.voice_id,
                    Engine=self.engine,
                    TextType="text",
                )
            except (ClientError, BotoCoreError) as exc:
                raise BackendUnavailable(f"failed to synthesize speech: {exc}") from exc

            stream = result["AudioStream"]
            try:
                audio.extend(stream.read())
            finally:
                stream.close()

        logger.info(f"Synthesized {len(audio)} bytes of audio from {len(chunks)} chunk(s)")
        return bytes(audio)

    def upload_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """
        Upload bytes to S3 and return the public URL.

        Public access is controlled by the bucket policy, not object ACLs.
        """
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket_name}/{key}")
            self._s3.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed: {exc}")
            raise BackendUnavailable(f"failed to upload to S3: {exc}") from exc
        return self.url_for_key(key)

    def publish_speech(self, text: str, annotation_id: str) -> str:
        audio = self.synthesize_speech(text)
        key = f"tts/{annotation_id}_{unix_millis()}.mp3"
        return self.upload_bytes(key, audio, "audio/mpeg")

    def publish_image(self, data: bytes, annotation_id: str, content_type: str) -> str:
        key = f"images/{annotation_id}_{unix_millis()}{image_extension_for(content_type)}"
        return self.upload_bytes(key, data, content_type)

    def delete_object(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(f"failed to delete from S3: {exc}") from exc
        logger.info(f"Deleted s3://{self.bucket_name}/{key}")

    def test_connection(self) -> None:
        """Check that the bucket and Polly are reachable with the configured credentials."""
        try:
            self._s3.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(f"S3 bucket not accessible: {exc}") from exc
        try:
            self._polly.describe_voices()
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(f"polly not accessible: {exc}") from exc


def build_publisher(config: DictConfig) -> Optional[AWSPublisher]:
    """
    Create the publisher from the "aws" config section.

    Returns None when no bucket is configured. Explicit credentials are used
    when both keys are set; otherwise boto3 resolves credentials from its
    default chain.
    """
    aws = config.aws
    if not aws.s3_bucket_name:
        logger.warning("AWS_S3_BUCKET_NAME not configured; speech and image publishing disabled")
        return None

    session_kwargs = {"region_name": aws.region}
    if aws.access_key_id and aws.secret_access_key:
        session_kwargs["aws_access_key_id"] = aws.access_key_id
        session_kwargs["aws_secret_access_key"] = aws.secret_access_key

    try:
        session = boto3.Session(**session_kwargs)
        s3_client = session.client("s3")
        polly_client = session.client("polly")
    except (BotoCoreError, ValueError) as exc:
        logger.warning(f"Failed to create AWS clients: {exc}")
        return None

    logger.info(f"AWS publisher initialized (bucket={aws.s3_bucket_name}, voice={aws.polly_voice_id})")
    return AWSPublisher(
        s3_client=s3_client,
        polly_client=polly_client,
        bucket_name=aws.s3_bucket_name,
        voice_id=aws.polly_voice_id,
        engine=aws.polly_engine,
    )
