"""Audio front end for whisper-torch.

This module turns a mono 16 kHz waveform into the log-mel spectrogram the
encoder consumes, and provides a small convenience loader for audio files.
"""

import logging
import os
from functools import lru_cache
from typing import Optional, Union

import numpy as np
import soundfile as sf
import torch
import torch.nn.functional as F
import torchaudio

from .errors import AudioDecodeError

logger = logging.getLogger(__name__)

# Hard-coded audio hyperparameters
SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
CHUNK_LENGTH = 30
N_SAMPLES = CHUNK_LENGTH * SAMPLE_RATE  # 480000 samples in a 30-second window
N_FRAMES = N_SAMPLES // HOP_LENGTH  # 3000 frames in a mel window

N_SAMPLES_PER_TOKEN = HOP_LENGTH * 2  # the initial convolutions have stride 2
FRAMES_PER_SECOND = SAMPLE_RATE // HOP_LENGTH  # 10ms per audio frame
TOKENS_PER_SECOND = SAMPLE_RATE // N_SAMPLES_PER_TOKEN  # 20ms per audio token

AudioInput = Union[str, os.PathLike, np.ndarray, torch.Tensor]


def load_audio(path: Union[str, os.PathLike], sr: int = SAMPLE_RATE) -> np.ndarray:
    """Load an audio file as a mono float32 waveform.

    Multi-channel audio is down-mixed by averaging channels, and audio at
    another sample rate is resampled to ``sr``.

    Args:
        path: Path to an audio file readable by libsndfile
        sr: Target sample rate (default: 16000)

    Returns:
        Audio waveform as float32 numpy array, shape (n_samples,)

    Raises:
        FileNotFoundError: If the file does not exist
        AudioDecodeError: If the file cannot be decoded or holds no samples
    """
    path = os.fspath(path)
    if not os.path.exists(path):
        raise FileNotFoundError(
            f"Audio file '{path}' not found. Check file path and permissions"
        )

    try:
        audio, file_sr = sf.read(path, dtype="float32", always_2d=True)
    except Exception as e:
        raise AudioDecodeError(
            f"Failed to load audio file '{path}'. "
            f"Check that the file is a valid audio format. Error: {str(e)}"
        ) from e

    audio = audio.mean(axis=1)
    if audio.size == 0:
        raise AudioDecodeError(f"Audio file '{path}' contains no samples")

    if file_sr != sr:
        logger.debug(f"Resampling '{path}' from {file_sr} Hz to {sr} Hz")
        audio = torchaudio.functional.resample(
            torch.from_numpy(np.ascontiguousarray(audio)), file_sr, sr
        ).numpy()

    return audio.astype(np.float32, copy=False)


def pad_or_trim(array, length: int = N_SAMPLES, *, axis: int = -1):
    """Pad or trim an array to ``length`` along ``axis``, as the encoder expects.

    Works on numpy arrays and torch tensors; padding is zeros at the end.
    """
    if torch.is_tensor(array):
        if array.shape[axis] > length:
            array = array.index_select(
                dim=axis, index=torch.arange(length, device=array.device)
            )
        if array.shape[axis] < length:
            pad_widths = [(0, 0)] * array.ndim
            pad_widths[axis] = (0, length - array.shape[axis])
            array = F.pad(array, [pad for sizes in pad_widths[::-1] for pad in sizes])
    else:
        if array.shape[axis] > length:
            array = array.take(indices=range(length), axis=axis)
        if array.shape[axis] < length:
            pad_widths = [(0, 0)] * array.ndim
            pad_widths[axis] = (0, length - array.shape[axis])
            array = np.pad(array, pad_widths)
    return array


def hz_to_mel(freq):
    return 2595.0 * np.log10(1.0 + np.asarray(freq, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


@lru_cache(maxsize=None)
def _mel_filter_bank(n_mels: int, sample_rate: int, n_fft: int) -> np.ndarray:
    n_freqs = n_fft // 2 + 1
    fft_freqs = np.linspace(0.0, sample_rate / 2.0, n_freqs)

    mel_points = np.linspace(hz_to_mel(0.0), hz_to_mel(sample_rate / 2.0), n_mels + 2)
    hz_points = mel_to_hz(mel_points)

    weights = np.zeros((n_mels, n_freqs), dtype=np.float64)
    for i in range(n_mels):
        lower, center, upper = hz_points[i], hz_points[i + 1], hz_points[i + 2]
        rising = (fft_freqs - lower) / (center - lower)
        falling = (upper - fft_freqs) / (upper - center)
        weights[i] = np.maximum(0.0, np.minimum(rising, falling))
        # Slaney-style area normalization
        weights[i] *= 2.0 / (upper - lower)

    weights.setflags(write=False)
    return weights


def mel_filters(n_mels: int, device: Optional[Union[str, torch.device]] = None) -> torch.Tensor:
    """Triangular mel filter bank of shape [n_mels, N_FFT // 2 + 1].

    The bank spans 0 Hz to Nyquist on the HTK mel scale. It is a pure
    function of ``n_mels``; the numeric table is computed once per
    ``n_mels`` and every call returns a new tensor.

    Args:
        n_mels: Number of mel bins (80 for most models, 128 for large-v3)
        device: Device to place the returned tensor on

    Returns:
        Float32 tensor of filter weights
    """
    if not isinstance(n_mels, int) or n_mels < 1:
        raise ValueError(f"n_mels must be positive integer, got {n_mels}")
    weights = _mel_filter_bank(n_mels, SAMPLE_RATE, N_FFT)
    return torch.tensor(weights, dtype=torch.float32, device=device)


def log_mel_spectrogram(
    audio: AudioInput,
    n_mels: int = 80,
    padding: int = 0,
    device: Optional[Union[str, torch.device]] = None,
) -> torch.Tensor:
    """Compute the log-mel spectrogram of a waveform.

    Args:
        audio: Path to an audio file, or a 1-D waveform at 16 kHz
        n_mels: Number of mel bins
        padding: Number of zero samples appended before the transform
        device: Device to run the transform on

    Returns:
        Float32 tensor of shape [n_mels, n_frames] with
        ``n_frames == (n_samples + padding) // HOP_LENGTH``
    """
    if isinstance(audio, (str, os.PathLike)):
        audio = load_audio(audio)
    if isinstance(audio, np.ndarray):
        audio = torch.from_numpy(np.ascontiguousarray(audio, dtype=np.float32))
    if not torch.is_tensor(audio):
        raise TypeError(
            f"audio must be str (file path), np.ndarray or torch.Tensor, "
            f"got {type(audio).__name__}"
        )
    if audio.ndim != 1:
        raise ValueError(f"audio must be 1-dimensional, got shape {tuple(audio.shape)}")

    audio = audio.float()
    if device is not None:
        audio = audio.to(device)
    if padding > 0:
        audio = F.pad(audio, (0, padding))

    window = torch.hann_window(N_FFT, device=audio.device)
    stft = torch.stft(
        audio,
        N_FFT,
        HOP_LENGTH,
        window=window,
        center=True,
        pad_mode="reflect",
        return_complex=True,
    )
    # the last frame only covers the reflected tail
    magnitudes = stft[..., :-1].abs() ** 2

    filters = mel_filters(n_mels, device=audio.device)
    mel_spec = filters @ magnitudes

    log_spec = torch.clamp(mel_spec, min=1e-10).log10()
    log_spec = torch.maximum(log_spec, log_spec.max() - 8.0)
    log_spec = (log_spec + 4.0) / 4.0
    return log_spec
