"""
RAPPORT Speech Services
=======================
Thin wrappers around the two voice collaborators:

  👂 whisper.cpp (STT) - local binary, fed 16kHz mono PCM produced by ffmpeg
  🗣️ Edge-TTS (Voice)  - text to MP3 bytes
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

import aiofiles
import edge_tts

from . import config
from .errors import InvalidInput, ServiceUnavailable, UpstreamFailure

logger = logging.getLogger(__name__)


async def run_process(*args: str, cwd: Optional[Path] = None, timeout: Optional[float] = None) -> str:
    """Run an external program and return its stdout. Kills it if `timeout` elapses."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RuntimeError(f"{Path(args[0]).name} timed out after {timeout}s")

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[-300:]
        raise RuntimeError(f"{Path(args[0]).name} exited with {proc.returncode}: {detail}")
    return stdout.decode("utf-8", errors="replace")


class SpeechToText:
    def __init__(
        self,
        whisper_dir: Union[str, Path] = config.WHISPER_CPP_DIR,
        model: str = config.WHISPER_MODEL,
        uploads_dir: Union[str, Path] = config.UPLOADS_DIR,
        timeout: float = config.STT_TIMEOUT_SECONDS,
    ):
        self.whisper_dir = Path(whisper_dir)
        self.binary = self.whisper_dir / "main"
        self.model_file = self.whisper_dir / "models" / model
        self.uploads_dir = Path(uploads_dir)
        self.timeout = timeout
        self.available = self._check_availability()

    def _check_availability(self) -> bool:
        missing = [p for p in (self.binary, self.model_file) if not p.exists()]
        if missing:
            for p in missing:
                logger.warning(f"whisper.cpp not available, missing: {p}")
            return False
        logger.info(f"whisper.cpp available at: {self.whisper_dir}")
        return True

    async def convert_to_wav(self, input_path: str) -> str:
        output_path = input_path + ".wav"
        await run_process(
            "ffmpeg", "-y", "-i", input_path, "-ar", "16000", "-ac", "1", "-c:a", "pcm_s16le", output_path
        )
        return output_path

    async def run_whisper(self, wav_path: str) -> str:
        # --no-timestamps prints plain text, one segment per line
        stdout = await run_process(
            str(self.binary), "-l", "en", "-m", str(self.model_file), "-f", wav_path, "--no-timestamps",
            cwd=self.whisper_dir,
            timeout=self.timeout,
        )
        return stdout.strip()

    async def transcribe(self, audio: bytes, suffix: str = ".webm") -> str:
        if not audio:
            raise InvalidInput("No audio file provided")
        if not self.available:
            raise ServiceUnavailable("Whisper transcription not available")

        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        fd, input_path = tempfile.mkstemp(suffix=suffix, prefix="upload_", dir=self.uploads_dir)
        os.close(fd)
        temp_files: List[str] = [input_path]

        try:
            async with aiofiles.open(input_path, "wb") as f:
                await f.write(audio)

            # ffmpeg may leave a partial file behind on failure
            temp_files.append(input_path + ".wav")
            wav_path = await self.convert_to_wav(input_path)

            logger.info(f"[whisper] Transcribing: {wav_path}")
            text = await self.run_whisper(wav_path)
            logger.info(f"[whisper] Result: {text[:100]!r}" if text else "[whisper] Result: (empty)")
            return text
        except (RuntimeError, OSError) as e:
            logger.error(f"[whisper] Transcription error: {e}")
            raise UpstreamFailure("Transcription failed") from e
        finally:
            for path in temp_files:
                try:
                    if os.path.exists(path):
                        os.remove(path)
                except OSError as e:
                    logger.warning(f"Cleanup error: {e}")


class TextToSpeech:
    media_type = "audio/mpeg"

    def __init__(self, voice: str = config.TTS_VOICE, rate: str = config.TTS_RATE, max_chars: int = config.TTS_MAX_CHARS):
        self.voice = voice
        self.rate = rate
        self.max_chars = max_chars

    def validate(self, text) -> str:
        if not text or not isinstance(text, str) or len(text) > self.max_chars:
            raise InvalidInput(f"text is required and must be under {self.max_chars} characters")
        return text

    async def synthesize(self, text: str) -> bytes:
        """Generate MP3 audio in memory."""
        self.validate(text)
        if not self.voice:
            raise UpstreamFailure("TTS voice not configured")

        audio = bytearray()
        try:
            communicate = edge_tts.Communicate(text, self.voice, rate=self.rate)
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    audio.extend(chunk["data"])
        except Exception as e:
            logger.error(f"TTS error: {e}")
            raise UpstreamFailure("TTS failed") from e

        if not audio:
            logger.error("TTS returned no audio")
            raise UpstreamFailure("TTS failed")
        return bytes(audio)
