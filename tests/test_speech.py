import unittest
import asyncio
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from rapport_core.errors import InvalidInput, ServiceUnavailable, UpstreamFailure
from rapport_core.speech import SpeechToText, TextToSpeech, run_process


class FakeCommunicate:
    def __init__(self, text, voice, rate=None):
        self.text = text
        self.voice = voice

    async def stream(self):
        yield {"type": "WordBoundary", "offset": 0}
        yield {"type": "audio", "data": b"ID3"}
        yield {"type": "audio", "data": b"\x00\x01"}


class TestSpeechToText(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.whisper_dir = Path(self.tmp.name) / "whisper.cpp"
        (self.whisper_dir / "models").mkdir(parents=True)
        (self.whisper_dir / "main").write_bytes(b"")
        (self.whisper_dir / "models" / "ggml-base.en.bin").write_bytes(b"")
        self.uploads = Path(self.tmp.name) / "uploads"
        self.stt = SpeechToText(whisper_dir=self.whisper_dir, uploads_dir=self.uploads, timeout=5)

    def tearDown(self):
        self.tmp.cleanup()

    def test_availability(self):
        self.assertTrue(self.stt.available)
        missing = SpeechToText(whisper_dir=Path(self.tmp.name) / "nowhere", uploads_dir=self.uploads)
        self.assertFalse(missing.available)
        with self.assertRaises(ServiceUnavailable):
            asyncio.run(missing.transcribe(b"audio"))

    def test_no_audio(self):
        with self.assertRaises(InvalidInput):
            asyncio.run(self.stt.transcribe(b""))

    @patch("rapport_core.speech.run_process")
    def test_transcribe_converts_then_runs_whisper(self, mock_run):
        async def fake_run(*args, cwd=None, timeout=None):
            if args[0] == "ffmpeg":
                Path(args[-1]).write_bytes(b"RIFF")
                return ""
            return "  Sure, I can talk now.\n"

        mock_run.side_effect = fake_run

        text = asyncio.run(self.stt.transcribe(b"webm-bytes", suffix=".webm"))

        self.assertEqual(text, "Sure, I can talk now.")
        ffmpeg_args = mock_run.await_args_list[0].args
        self.assertEqual(ffmpeg_args[0], "ffmpeg")
        self.assertEqual(ffmpeg_args[4:10], ("-ar", "16000", "-ac", "1", "-c:a", "pcm_s16le"))
        self.assertTrue(ffmpeg_args[-1].endswith(".webm.wav"))
        whisper_call = mock_run.await_args_list[1]
        self.assertIn("--no-timestamps", whisper_call.args)
        self.assertEqual(whisper_call.kwargs["timeout"], 5)
        self.assertEqual(list(self.uploads.iterdir()), [])

    @patch("rapport_core.speech.run_process")
    def test_temp_files_removed_on_failure(self, mock_run):
        async def fake_run(*args, cwd=None, timeout=None):
            if args[0] == "ffmpeg":
                Path(args[-1]).write_bytes(b"partial")
                return ""
            raise RuntimeError("main timed out after 5s")

        mock_run.side_effect = fake_run

        with self.assertRaises(UpstreamFailure):
            asyncio.run(self.stt.transcribe(b"webm-bytes"))
        self.assertEqual(list(self.uploads.iterdir()), [])

    @patch("rapport_core.speech.run_process", new_callable=AsyncMock)
    def test_missing_ffmpeg(self, mock_run):
        mock_run.side_effect = FileNotFoundError("ffmpeg")
        with self.assertRaises(UpstreamFailure):
            asyncio.run(self.stt.transcribe(b"webm-bytes"))
        self.assertEqual(list(self.uploads.iterdir()), [])


class TestRunProcess(unittest.TestCase):

    def test_stdout(self):
        out = asyncio.run(run_process(sys.executable, "-c", "print('hello')"))
        self.assertEqual(out.strip(), "hello")

    def test_nonzero_exit(self):
        with self.assertRaises(RuntimeError):
            asyncio.run(run_process(sys.executable, "-c", "import sys; sys.exit(3)"))

    def test_timeout_kills_process(self):
        with self.assertRaises(RuntimeError) as ctx:
            asyncio.run(run_process(sys.executable, "-c", "import time; time.sleep(10)", timeout=0.2))
        self.assertIn("timed out", str(ctx.exception))


class TestTextToSpeech(unittest.TestCase):

    def test_validation(self):
        tts = TextToSpeech(voice="en-US-AndrewNeural", max_chars=10)
        for bad in [None, "", 123, "x" * 11]:
            with self.assertRaises(InvalidInput):
                asyncio.run(tts.synthesize(bad))

    def test_unconfigured_voice(self):
        with self.assertRaises(UpstreamFailure):
            asyncio.run(TextToSpeech(voice="").synthesize("Hello"))

    @patch("rapport_core.speech.edge_tts.Communicate", FakeCommunicate)
    def test_collects_audio_chunks(self):
        audio = asyncio.run(TextToSpeech(voice="en-US-AndrewNeural").synthesize("Hello"))
        self.assertEqual(audio, b"ID3\x00\x01")

    @patch("rapport_core.speech.edge_tts.Communicate")
    def test_vendor_failure(self, mock_communicate):
        mock_communicate.side_effect = ConnectionError("no route to host")
        with self.assertRaises(UpstreamFailure):
            asyncio.run(TextToSpeech(voice="en-US-AndrewNeural").synthesize("Hello"))


if __name__ == '__main__':
    unittest.main()
