"""Basic usage example for whisper-torch.

This example demonstrates:
1. Simple transcription of audio files
2. Long audio with prompts and temperature fallback
3. Writing subtitles
4. Understanding the output format
"""

import logging

import torch
from whisper_torch import WhisperTranscriber, get_writer

logging.basicConfig(level=logging.INFO)

# =============================================================================
# Example 1: Basic Transcription
# =============================================================================
print("=" * 70)
print("Example 1: Basic Transcription")
print("=" * 70)

# Initialize the model
# - model_name_or_path: local directory or Hugging Face Hub repository
# - device: "cuda" for GPU acceleration, "cpu" for CPU-only
# - compute_type: "float16" only takes effect on CUDA
model = WhisperTranscriber(
    "mlx-community/whisper-tiny",
    device="cuda" if torch.cuda.is_available() else "cpu",
    compute_type="float16",
)

# Replace with your actual audio file path
audio_path = "audio.wav"

try:
    result = model.transcribe(audio_path)
    info = result.info

    print(f"\nAudio duration: {info.duration:.2f}s")
    print(f"Processing time: {info.processing_time:.2f}s")
    print(f"Real-time factor: {info.processing_time / info.duration:.2f}x")
    print(f"Language: {result.language}")
    print(f"Windows: {info.num_windows} ({info.skipped_windows} skipped, {info.silent_windows} silent)")
    print()

    print("Transcription:")
    print("-" * 70)
    for segment in result.segments:
        print(f"[{segment.start:6.2f}s - {segment.end:6.2f}s] {segment.text}")

except FileNotFoundError:
    print(f"Audio file '{audio_path}' not found. Please provide a valid audio file.")
    raise SystemExit(1)

# =============================================================================
# Example 2: Long audio, prompt and fallback ladder
# =============================================================================
print()
print("=" * 70)
print("Example 2: Long Audio")
print("=" * 70)

result = model.transcribe(
    audio_path,
    language="en",
    initial_prompt="Kennedy inaugural address.",
    temperature=(0.0, 0.2, 0.4),
    verbose=True,
)
print(result.text)

# =============================================================================
# Example 3: Subtitles
# =============================================================================
print()
print("=" * 70)
print("Example 3: Subtitles")
print("=" * 70)

for output_format in ("srt", "vtt", "json"):
    path = get_writer(output_format, "transcripts")(result, audio_path)
    print(f"Wrote {path}")
