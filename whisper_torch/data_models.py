"""Core data models for whisper-torch.

This module defines the data structures shared by the loading, decoding
and transcription stages: model dimensions, per-call decoding options,
window-level decoding results, and the segments and metadata of a full
transcription.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ModelLoadError


@dataclass(frozen=True)
class ModelDimensions:
    """Architecture hyperparameters of a Whisper-style model.

    Loaded once from the model configuration. ``n_vocab`` also decides
    the special-token layout (English-only vs multilingual).

    Attributes:
        n_mels: Number of mel bins of the input spectrogram
        n_audio_ctx: Encoder sequence length after the strided convolution
        n_audio_state: Encoder hidden width
        n_audio_head: Encoder attention heads
        n_audio_layer: Encoder transformer blocks
        n_vocab: Vocabulary size
        n_text_ctx: Maximum decoder sequence length
        n_text_state: Decoder hidden width
        n_text_head: Decoder attention heads
        n_text_layer: Decoder transformer blocks
    """
    n_mels: int
    n_audio_ctx: int
    n_audio_state: int
    n_audio_head: int
    n_audio_layer: int
    n_vocab: int
    n_text_ctx: int
    n_text_state: int
    n_text_head: int
    n_text_layer: int

    @classmethod
    def from_dict(cls, config: Dict) -> "ModelDimensions":
        """Build dimensions from a configuration mapping.

        Keys are matched by exact name; keys that are not dimension
        fields are ignored.

        Raises:
            ModelLoadError: If a field is missing or not an integer
        """
        values = {}
        for f in fields(cls):
            if f.name not in config:
                raise ModelLoadError(
                    f"model configuration is missing required field '{f.name}'"
                )
            value = config[f.name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ModelLoadError(
                    f"model configuration field '{f.name}' must be int, "
                    f"got {type(value).__name__}"
                )
            if value <= 0:
                raise ModelLoadError(
                    f"model configuration field '{f.name}' must be positive, got {value}"
                )
            values[f.name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class DecodingOptions:
    """Per-call configuration of the decoding engine.

    Attributes:
        task: "transcribe" or "translate"
        language: Language code; None lets the engine detect it
        temperature: Sampling temperature, 0 selects greedy decoding
        sample_len: Maximum number of tokens to generate
        prompt: Previous-context tokens placed after the initial sequence
        suppress_blank: Suppress the whitespace token at the first step
        suppress_tokens: Token ids whose logits are forced to -inf
        without_timestamps: Add the no-timestamps token to the initial sequence
    """
    task: str = "transcribe"
    language: Optional[str] = None
    temperature: float = 0.0
    sample_len: Optional[int] = None
    prompt: Tuple[int, ...] = ()
    suppress_blank: bool = True
    suppress_tokens: Tuple[int, ...] = (-1,)
    without_timestamps: bool = False

    def __post_init__(self):
        # allow lists at the call site while keeping the options hashable
        object.__setattr__(self, "prompt", tuple(self.prompt))
        object.__setattr__(self, "suppress_tokens", tuple(self.suppress_tokens))
        if self.task not in ("transcribe", "translate"):
            raise ValueError(
                f"task must be 'transcribe' or 'translate', got '{self.task}'"
            )
        if self.temperature < 0:
            raise ValueError(
                f"temperature must be non-negative, got {self.temperature}"
            )
        if self.sample_len is not None and self.sample_len < 1:
            raise ValueError(
                f"sample_len must be positive integer, got {self.sample_len}"
            )


@dataclass
class LanguageDetectionResult:
    """Outcome of spoken-language detection on one window.

    Attributes:
        language: Most probable language code
        probabilities: Probability of every supported language code
    """
    language: str
    probabilities: Dict[str, float]


@dataclass
class DecodingResult:
    """Result of one decode attempt on one window.

    Attributes:
        tokens: Generated token ids, without the initial sequence and end token
        text: Decoded text of the generated tokens
        avg_logprob: Mean log-probability of the generated tokens
        no_speech_prob: Probability of the no-speech token
        compression_ratio: UTF-8 length over zlib-compressed length of text
        temperature: Temperature the result was sampled at
        language: Language the window was decoded as
        language_probs: Language distribution when it was detected
        truncated: True when an out-of-vocabulary id aborted generation
        stop_reason: Why the decode loop stopped
    """
    tokens: List[int]
    text: str
    avg_logprob: float
    no_speech_prob: float
    compression_ratio: float
    temperature: float
    language: Optional[str] = None
    language_probs: Optional[Dict[str, float]] = None
    truncated: bool = False
    stop_reason: str = "end_of_text"


@dataclass
class WordTimestamp:
    """A single word with timing information.

    Attributes:
        word: Word text, including its leading space
        start: Start time in seconds
        end: End time in seconds
        probability: Mean token probability of the word
    """
    word: str
    start: float
    end: float
    probability: float


@dataclass
class TranscriptionSegment:
    """A transcribed segment with timing information.

    Attributes:
        id: Segment index, increasing through the transcription
        seek: Frame offset of the window the segment came from
        start: Start time in seconds relative to original audio
        end: End time in seconds relative to original audio
        text: Transcribed text content
        tokens: Token ids of the segment, timestamps included
        temperature: Temperature the window was decoded at
        avg_logprob: Average log-probability of the window
        compression_ratio: Compression ratio of the window text
        no_speech_prob: No-speech probability of the window
        words: Word-level timestamps, when available
    """
    id: int
    seek: int
    start: float
    end: float
    text: str
    tokens: List[int]
    temperature: float
    avg_logprob: float
    compression_ratio: float
    no_speech_prob: float
    words: Optional[List[WordTimestamp]] = None


@dataclass
class TranscriptionInfo:
    """Metadata about the transcription process.

    Windows dropped by the quality gate are counted in ``skipped_windows``
    so that operators can see how much audio produced no text.

    Attributes:
        duration: Total audio duration in seconds
        num_windows: Number of decoding windows processed
        skipped_windows: Windows where no temperature passed the quality gate
        silent_windows: Windows accepted as silence
        language: Declared or detected language code
        device: Device used for inference ("cpu" or "cuda")
        compute_type: Precision used ("float16" or "float32")
        processing_time: Total wall-clock time for processing in seconds
    """
    duration: float
    num_windows: int
    skipped_windows: int
    silent_windows: int
    language: str
    device: str
    compute_type: str
    processing_time: float


@dataclass(frozen=True)
class TranscriptionResult:
    """Terminal artifact of one transcription.

    Attributes:
        text: Concatenated text of all segments
        segments: Segments in increasing id order
        language: Declared or detected language code
        info: Processing metadata
    """
    text: str
    segments: Sequence[TranscriptionSegment] = field(default_factory=tuple)
    language: str = "en"
    info: Optional[TranscriptionInfo] = None

    def to_dict(self) -> Dict:
        return {
            "text": self.text,
            "segments": [asdict(segment) for segment in self.segments],
            "language": self.language,
        }
