"""Exception taxonomy for whisper-torch.

Load-time and I/O errors propagate to the caller unchanged. Decode-time
anomalies (out-of-vocabulary ids, exhausted quality gates) are contained
by the decoding engine and the transcriber and only show up as shortened
or missing segments, counted in the transcription diagnostics.
"""


class WhisperError(Exception):
    """Base class for all whisper-torch errors."""


class AudioDecodeError(WhisperError, ValueError):
    """Audio file could not be read or decoded into a waveform."""


class ModelLoadError(WhisperError, RuntimeError):
    """Model configuration or weights are missing, malformed or mismatched."""


class TokenizerLoadError(WhisperError, FileNotFoundError):
    """Tokenizer vocabulary artifact is missing or malformed."""


class OutOfVocabularyToken(WhisperError):
    """The decode loop selected a token id outside ``[0, n_vocab)``.

    Attributes:
        token: The offending token id
        n_vocab: Vocabulary size of the model
    """

    def __init__(self, token: int, n_vocab: int):
        super().__init__(
            f"token {token} is outside the vocabulary range [0, {n_vocab})"
        )
        self.token = token
        self.n_vocab = n_vocab


class QualityGateExhausted(WhisperError):
    """No temperature in the fallback ladder produced an acceptable result.

    Attributes:
        seek: Frame offset of the window that failed
        temperatures: Temperatures that were tried
    """

    def __init__(self, seek: int, temperatures):
        super().__init__(
            f"no decoding result passed the quality thresholds at frame {seek} "
            f"(tried temperatures {list(temperatures)})"
        )
        self.seek = seek
        self.temperatures = tuple(temperatures)


class DecodingCancelled(WhisperError):
    """Decoding was cancelled by the caller between two decode steps."""
