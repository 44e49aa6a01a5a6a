import asyncio
import base64
import os
import struct
import traceback
from dataclasses import dataclass
from typing import Optional

from config import SAMPLE_RATE

WAV_HEADER_SIZE = 44
# ~0.5 s of PCM16 mono per outbound audio_chunk event.
CHUNK_BYTES = SAMPLE_RATE


def decode_audio_chunk(data: str) -> bytes:
    """Decode a client audio fragment, dropping any data-URL prefix."""
    clean = data.split(",")[-1]
    return base64.b64decode(clean, validate=True)


def pcm16_mono_to_wav(pcm_bytes: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Wrap raw PCM16 mono bytes into a WAV container."""
    channels = 1
    bits_per_sample = 16
    byte_rate = sample_rate * channels * (bits_per_sample // 8)
    block_align = channels * (bits_per_sample // 8)
    data_size = len(pcm_bytes)

    header = struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF', 36 + data_size, b'WAVE',
        b'fmt ', 16, 1, channels,
        sample_rate, byte_rate, block_align, bits_per_sample,
        b'data', data_size
    )
    return header + pcm_bytes


def split_pcm_to_b64(pcm_bytes: bytes, chunk_bytes: int = CHUNK_BYTES) -> list[str]:
    return [
        base64.b64encode(pcm_bytes[i:i + chunk_bytes]).decode("ascii")
        for i in range(0, len(pcm_bytes), chunk_bytes)
    ]


@dataclass
class Transcription:
    text: str
    no_speech_prob: float


SILENT = Transcription(text="", no_speech_prob=1.0)


class SpeechTranscriber:
    """Google Cloud Speech-to-Text V2 over one buffered candidate turn.

    Failures come back as SILENT so callers handle them exactly like a quiet
    turn.
    """

    def __init__(self, project_id: Optional[str] = None, model: Optional[str] = None):
        self.project_id = project_id or os.getenv("GOOGLE_CLOUD_PROJECT")
        self.model = model or os.getenv("STT_MODEL", "latest_long")

    async def transcribe(self, wav_bytes: bytes, language: str = "en-US") -> Transcription:
        if not self.project_id:
            print("[STT] ERROR: GOOGLE_CLOUD_PROJECT is not set.")
            return SILENT
        if len(wav_bytes) <= WAV_HEADER_SIZE:
            return SILENT

        duration_ms = (len(wav_bytes) - WAV_HEADER_SIZE) // (SAMPLE_RATE * 2 // 1000)
        print(f"[STT] WAV buffer: {len(wav_bytes)} bytes (~{duration_ms}ms of audio)")

        try:
            from google.cloud.speech_v2 import SpeechClient
            from google.cloud.speech_v2.types import cloud_speech

            def do_transcribe() -> Transcription:
                client = SpeechClient()
                request = cloud_speech.RecognizeRequest(
                    recognizer=f"projects/{self.project_id}/locations/global/recognizers/_",
                    config=cloud_speech.RecognitionConfig(
                        auto_decoding_config=cloud_speech.AutoDetectDecodingConfig(),
                        language_codes=[language],
                        model=self.model,
                    ),
                    content=wav_bytes,
                )
                response = client.recognize(request=request)

                texts = []
                confidences = []
                for result in response.results:
                    if result.alternatives:
                        texts.append(result.alternatives[0].transcript)
                        confidences.append(result.alternatives[0].confidence)
                return transcription_from_results(texts, confidences)

            result = await asyncio.to_thread(do_transcribe)
            print(f"[STT] Text='{result.text}', NoSpeechProb={result.no_speech_prob:.2f}")
            return result

        except Exception as e:
            print(f"[STT] ERROR during Google Cloud STT transcription: {e}")
            traceback.print_exc()
            return SILENT


def transcription_from_results(texts: list[str], confidences: list[float]) -> Transcription:
    """Turn recognizer alternatives into text plus a no-speech probability.

    No results means silence. A confidence of 0 means the model did not
    report one, which is treated as speech.
    """
    text = " ".join(t.strip() for t in texts if t and t.strip()).strip()
    if not text:
        return SILENT
    reported = [c for c in confidences if c and c > 0]
    if not reported:
        return Transcription(text=text, no_speech_prob=0.0)
    return Transcription(text=text, no_speech_prob=round(1.0 - max(reported), 4))


class SpeechSynthesizer:
    """Google Cloud Text-to-Speech, returned as base64 PCM16 chunks."""

    def __init__(self, voice: Optional[str] = None):
        self.voice = voice or os.getenv("TTS_VOICE", "en-US-Neural2-F")

    async def synthesize(self, text: str, language: str = "en-US") -> list[str]:
        from google.cloud import texttospeech

        def do_synthesize() -> bytes:
            client = texttospeech.TextToSpeechClient()
            voice_params = texttospeech.VoiceSelectionParams(language_code=language)
            if self.voice.startswith(language):
                voice_params = texttospeech.VoiceSelectionParams(language_code=language, name=self.voice)
            audio_config = texttospeech.AudioConfig(
                audio_encoding=texttospeech.AudioEncoding.LINEAR16,
                sample_rate_hertz=SAMPLE_RATE,
            )
            response = client.synthesize_speech(
                input=texttospeech.SynthesisInput(text=text),
                voice=voice_params,
                audio_config=audio_config,
            )
            return response.audio_content

        audio = await asyncio.to_thread(do_synthesize)
        # LINEAR16 responses carry a WAV header; the client plays raw PCM.
        if audio[:4] == b"RIFF":
            audio = audio[WAV_HEADER_SIZE:]
        print(f"[TTS] Synthesized {len(audio)} bytes for {len(text)} chars")
        return split_pcm_to_b64(audio)
