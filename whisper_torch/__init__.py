"""whisper-torch: Whisper speech recognition in PyTorch.

This module provides long-audio transcription with Whisper checkpoints:
log-mel front end, byte-pair tokenizer, encoder-decoder transformer,
temperature-fallback decoding and timestamped segmentation.

Example:
    >>> from whisper_torch import WhisperTranscriber
    >>> model = WhisperTranscriber("mlx-community/whisper-tiny", device="cpu")
    >>> result = model.transcribe("audio.wav")
    >>> for segment in result.segments:
    ...     print(f"[{segment.start:.2f}s - {segment.end:.2f}s] {segment.text}")
"""

from .audio import load_audio, log_mel_spectrogram, pad_or_trim
from .data_models import (
    DecodingOptions,
    DecodingResult,
    LanguageDetectionResult,
    ModelDimensions,
    TranscriptionInfo,
    TranscriptionResult,
    TranscriptionSegment,
    WordTimestamp,
)
from .decoding import DecodingEngine
from .errors import (
    AudioDecodeError,
    DecodingCancelled,
    ModelLoadError,
    OutOfVocabularyToken,
    QualityGateExhausted,
    TokenizerLoadError,
    WhisperError,
)
from .loading import load_model
from .model import KVCache, Whisper
from .tokenizer import LANGUAGES, Tokenizer, get_tokenizer
from .transcriber import WhisperTranscriber
from .writers import format_timestamp, get_writer

__version__ = "0.1.0"

__all__ = [
    "AudioDecodeError",
    "DecodingCancelled",
    "DecodingEngine",
    "DecodingOptions",
    "DecodingResult",
    "KVCache",
    "LANGUAGES",
    "LanguageDetectionResult",
    "ModelDimensions",
    "ModelLoadError",
    "OutOfVocabularyToken",
    "QualityGateExhausted",
    "TokenizerLoadError",
    "TranscriptionInfo",
    "TranscriptionResult",
    "TranscriptionSegment",
    "Whisper",
    "WhisperError",
    "WhisperTranscriber",
    "WordTimestamp",
    "format_timestamp",
    "get_tokenizer",
    "get_writer",
    "load_audio",
    "load_model",
    "log_mel_spectrogram",
    "pad_or_trim",
]
