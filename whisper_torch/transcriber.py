"""Main API class for whisper-torch.

This module provides the WhisperTranscriber class, the primary interface
of whisper-torch. It loads the model and tokenizer, validates parameters,
and runs the long-audio pipeline: 30-second windows, temperature fallback,
timestamp-based segmentation and prompt carry-over between windows.
"""

import logging
import os
import threading
import time
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from tqdm import tqdm

from .audio import (
    HOP_LENGTH,
    N_FRAMES,
    N_SAMPLES,
    SAMPLE_RATE,
    AudioInput,
    load_audio,
    log_mel_spectrogram,
    pad_or_trim,
)
from .data_models import (
    DecodingOptions,
    DecodingResult,
    TranscriptionInfo,
    TranscriptionResult,
    TranscriptionSegment,
)
from .decoding import DecodingEngine
from .errors import QualityGateExhausted
from .loading import load_model, resolve_model_path
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

TIME_PRECISION = 0.02  # seconds per timestamp token
INPUT_STRIDE = 2  # mel frames per timestamp token
HIGH_TEMPERATURE_THRESHOLD = 0.5
DEFAULT_TEMPERATURES = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)


def _check_optional_number(name: str, value) -> None:
    if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
        raise TypeError(f"{name} must be numeric or None, got {type(value).__name__}")


class WhisperTranscriber:
    """Main interface for whisper-torch.

    WhisperTranscriber loads a Whisper checkpoint and transcribes audio of
    any length. One instance serves one transcription at a time; concurrent
    calls on the same instance are serialized with a lock.

    Example:
        >>> model = WhisperTranscriber("mlx-community/whisper-tiny", device="cpu")
        >>> result = model.transcribe("audio.wav")
        >>> for segment in result.segments:
        ...     print(f"[{segment.start:.2f}s - {segment.end:.2f}s] {segment.text}")

    Attributes:
        model: Loaded Whisper model
        tokenizer: Tokenizer matching the model vocabulary
        decoder: Decoding engine driving the model
        device: Device being used for inference
        compute_type: Precision type being used
    """

    def __init__(
        self,
        model_name_or_path: str,
        device: str = "cuda",
        compute_type: str = "float16",
        download_root: Optional[str] = None,
        vocab_path: Optional[str] = None,
        use_kv_cache: bool = True,
    ):
        """Initialize the transcriber.

        Args:
            model_name_or_path: Model directory or Hub repository id
                (e.g., "mlx-community/whisper-tiny")
            device: Device to run on ("cuda" or "cpu")
            compute_type: Precision ("float16" or "float32"); float16 only
                takes effect on CUDA
            download_root: Optional directory for model downloads
            vocab_path: Optional path to a .tiktoken vocabulary file
            use_kv_cache: Decode incrementally; False recomputes the full
                sequence at every step

        Raises:
            TypeError: If parameters have invalid types
            ValueError: If parameters are invalid
            RuntimeError: If CUDA is requested but not available
            ModelLoadError: If the model cannot be found or loaded
            TokenizerLoadError: If no vocabulary file can be found
        """
        if not isinstance(model_name_or_path, (str, os.PathLike)):
            raise TypeError(
                f"model_name_or_path must be str, got {type(model_name_or_path).__name__}"
            )
        model_name_or_path = os.fspath(model_name_or_path)
        if not model_name_or_path:
            raise ValueError("model_name_or_path cannot be empty string")

        # Validate device parameter
        if not isinstance(device, str):
            raise TypeError(
                f"device must be str, got {type(device).__name__}"
            )
        if device not in ["cuda", "cpu"]:
            raise ValueError(
                f"device must be 'cuda' or 'cpu', got '{device}'"
            )

        # Check CUDA availability
        if device == "cuda" and not torch.cuda.is_available():
            raise RuntimeError(
                "CUDA device requested but not available. "
                "Install CUDA toolkit or use device='cpu'"
            )

        # Validate compute_type parameter
        if not isinstance(compute_type, str):
            raise TypeError(
                f"compute_type must be str, got {type(compute_type).__name__}"
            )
        if compute_type not in ["float16", "float32"]:
            raise ValueError(
                f"compute_type must be 'float16' or 'float32', got '{compute_type}'"
            )

        if not isinstance(use_kv_cache, bool):
            raise TypeError(
                f"use_kv_cache must be bool, got {type(use_kv_cache).__name__}"
            )

        self.device = device
        self.compute_type = compute_type
        self.use_kv_cache = use_kv_cache

        logger.info(f"Loading model '{model_name_or_path}' on device '{device}'")

        model_dir = resolve_model_path(model_name_or_path, download_root)
        self.model = load_model(model_dir, device=device)
        self.tokenizer: Tokenizer = get_tokenizer(
            self.model.dims.n_vocab, vocab_path=vocab_path, model_dir=model_dir
        )
        self.decoder = DecodingEngine(
            self.model,
            self.tokenizer,
            use_kv_cache=use_kv_cache,
            fp16=(compute_type == "float16" and device == "cuda"),
        )
        self._lock = threading.Lock()

        logger.info(
            f"WhisperTranscriber initialized: device={device}, "
            f"compute_type={compute_type}, multilingual={self.tokenizer.multilingual}"
        )

    def _load_waveform(self, audio: AudioInput) -> torch.Tensor:
        if isinstance(audio, (str, os.PathLike)):
            audio = load_audio(audio)
        if isinstance(audio, np.ndarray):
            if audio.ndim != 1:
                raise ValueError(
                    f"audio array must be 1-dimensional, got shape {audio.shape}"
                )
            audio = torch.from_numpy(np.ascontiguousarray(audio, dtype=np.float32))
        elif torch.is_tensor(audio):
            if audio.ndim != 1:
                raise ValueError(
                    f"audio tensor must be 1-dimensional, got shape {tuple(audio.shape)}"
                )
            audio = audio.float()
        else:
            raise TypeError(
                f"audio must be str (file path), np.ndarray or torch.Tensor, "
                f"got {type(audio).__name__}"
            )
        if audio.numel() == 0:
            raise ValueError("audio array cannot be empty")
        return audio

    def _decode_with_fallback(
        self,
        audio_features: torch.Tensor,
        seek: int,
        options: DecodingOptions,
        temperatures: Sequence[float],
        compression_ratio_threshold: Optional[float],
        logprob_threshold: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> DecodingResult:
        """Walk the temperature ladder until a result passes the quality gate.

        The no-speech probability plays no part here: a result is accepted
        only on its compression ratio and average log-probability.

        Raises:
            QualityGateExhausted: If no temperature produced an acceptable result
        """
        for t in temperatures:
            result = self.decoder.decode(
                audio_features,
                replace(options, temperature=t),
                cancel_event=cancel_event,
            )

            needs_fallback = False
            if (
                compression_ratio_threshold is not None
                and result.compression_ratio > compression_ratio_threshold
            ):
                needs_fallback = True  # too repetitive
            if logprob_threshold is not None and result.avg_logprob < logprob_threshold:
                needs_fallback = True  # average log probability is too low
            if not needs_fallback:
                return result

            logger.debug(
                f"Window at frame {seek} rejected at temperature {t} "
                f"(compression_ratio={result.compression_ratio:.2f}, "
                f"avg_logprob={result.avg_logprob:.3f})"
            )

        raise QualityGateExhausted(seek, temperatures)

    def _split_segments(
        self,
        result: DecodingResult,
        seek: int,
        segment_size: int,
    ) -> Tuple[List[Tuple[float, float, List[int]]], int]:
        """Cut the window tokens into (start, end, tokens) pieces at timestamp pairs.

        Returns:
            pieces: Window-relative start/end seconds and tokens of each piece
            advance: Number of frames to move ``seek`` forward
        """
        tokens = result.tokens
        timestamp_begin = self.tokenizer.timestamp_begin
        positions = [i for i, token in enumerate(tokens) if token >= timestamp_begin]

        if len(positions) < 2:
            duration = segment_size * HOP_LENGTH / SAMPLE_RATE
            return [(0.0, duration, list(tokens))], segment_size

        last = positions[-1]
        boundaries = [0]
        for i in positions:
            if i + 1 < len(tokens) and tokens[i + 1] >= timestamp_begin and i + 1 <= last:
                boundaries.append(i + 1)
        if boundaries[-1] != last + 1:
            boundaries.append(last + 1)

        pieces = []
        previous_end = 0.0
        for lo, hi in zip(boundaries, boundaries[1:]):
            piece = tokens[lo:hi]
            stamps = [token - timestamp_begin for token in piece if token >= timestamp_begin]
            if not stamps:
                continue
            start = stamps[0] * TIME_PRECISION if piece[0] >= timestamp_begin else previous_end
            end = stamps[-1] * TIME_PRECISION
            pieces.append((start, end, list(piece)))
            previous_end = end

        advance = min((tokens[last] - timestamp_begin) * INPUT_STRIDE, segment_size)
        if advance <= 0:
            advance = segment_size
        return pieces, advance

    def transcribe(
        self,
        audio: AudioInput,
        *,
        language: Optional[str] = None,
        task: str = "transcribe",
        temperature: Union[float, Sequence[float]] = DEFAULT_TEMPERATURES,
        compression_ratio_threshold: Optional[float] = 2.4,
        logprob_threshold: Optional[float] = -1.0,
        no_speech_threshold: Optional[float] = None,
        condition_on_previous_text: bool = True,
        initial_prompt: Optional[str] = None,
        word_timestamps: bool = False,
        suppress_blank: bool = True,
        suppress_tokens: Sequence[int] = (-1,),
        sample_len: Optional[int] = None,
        verbose: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> TranscriptionResult:
        """Transcribe an audio file or waveform.

        Args:
            audio: Audio file path, or a 1-D float waveform at 16 kHz
            language: Language code; None detects it from the first window
            task: "transcribe" or "translate" (to English)
            temperature: Temperature, or increasing ladder of temperatures
                tried until a result passes the quality thresholds
            compression_ratio_threshold: Reject results more compressible than this
            logprob_threshold: Reject results with lower average log-probability
            no_speech_threshold: When set, an accepted window whose no-speech
                probability exceeds this emits no segment
            condition_on_previous_text: Prompt each window with the previous text
            initial_prompt: Text used as prompt for the first window
            word_timestamps: Decode with timestamp tokens enabled (no
                <|notimestamps|> token); segments are cut at timestamp pairs
            suppress_blank: Suppress a leading blank token
            suppress_tokens: Token ids never generated; negative ids are ignored
            sample_len: Maximum number of tokens per window
            verbose: Show a progress bar over audio frames
            cancel_event: Set it from another thread to stop transcription

        Returns:
            Transcription result with segments and processing metadata

        Raises:
            FileNotFoundError: If audio file is not found
            AudioDecodeError: If audio file cannot be decoded
            ValueError: If audio or parameters are invalid
            TypeError: If parameters have invalid types
            DecodingCancelled: If ``cancel_event`` was set

        Note:
            A window for which no temperature passes the quality thresholds
            produces no segment. Such windows are counted in
            ``result.info.skipped_windows`` and logged as warnings. Accepted
            windows that emit no segment are counted in
            ``result.info.silent_windows``.
        """
        # Validate language parameter
        if language is not None:
            if not isinstance(language, str):
                raise TypeError(
                    f"language must be str, got {type(language).__name__}"
                )
            if not language:
                raise ValueError("language cannot be empty string")
            if language not in self.tokenizer.language_codes:
                raise ValueError(f"Unsupported language '{language}'")
            if not self.tokenizer.multilingual and language != "en":
                raise ValueError(
                    f"English-only model cannot transcribe language '{language}'"
                )

        if task not in ["transcribe", "translate"]:
            raise ValueError(
                f"task must be 'transcribe' or 'translate', got '{task}'"
            )

        # Validate temperature parameter
        if isinstance(temperature, (int, float)) and not isinstance(temperature, bool):
            temperatures = (float(temperature),)
        elif isinstance(temperature, (list, tuple)) and temperature:
            temperatures = tuple(temperature)
            for t in temperatures:
                if isinstance(t, bool) or not isinstance(t, (int, float)):
                    raise TypeError(
                        f"temperature values must be numeric, got {type(t).__name__}"
                    )
        else:
            raise TypeError(
                f"temperature must be numeric or a non-empty sequence, "
                f"got {type(temperature).__name__}"
            )
        if any(t < 0 for t in temperatures):
            raise ValueError(f"temperature must be non-negative, got {temperature}")
        if any(a > b for a, b in zip(temperatures, temperatures[1:])):
            raise ValueError(f"temperature ladder must be non-decreasing, got {temperature}")

        _check_optional_number("compression_ratio_threshold", compression_ratio_threshold)
        _check_optional_number("logprob_threshold", logprob_threshold)
        _check_optional_number("no_speech_threshold", no_speech_threshold)

        if initial_prompt is not None and not isinstance(initial_prompt, str):
            raise TypeError(
                f"initial_prompt must be str, got {type(initial_prompt).__name__}"
            )
        if sample_len is not None:
            if isinstance(sample_len, bool) or not isinstance(sample_len, int):
                raise TypeError(
                    f"sample_len must be int, got {type(sample_len).__name__}"
                )
            if sample_len < 1:
                raise ValueError(
                    f"sample_len must be positive integer, got {sample_len}"
                )

        if not isinstance(suppress_tokens, (list, tuple)):
            raise TypeError(
                f"suppress_tokens must be a sequence of int, got {type(suppress_tokens).__name__}"
            )
        for token in suppress_tokens:
            if isinstance(token, bool) or not isinstance(token, int):
                raise TypeError(
                    f"suppress_tokens values must be int, got {type(token).__name__}"
                )

        with self._lock:
            return self._transcribe(
                self._load_waveform(audio),
                language=language,
                temperatures=temperatures,
                compression_ratio_threshold=compression_ratio_threshold,
                logprob_threshold=logprob_threshold,
                no_speech_threshold=no_speech_threshold,
                condition_on_previous_text=condition_on_previous_text,
                initial_prompt=initial_prompt,
                verbose=verbose,
                cancel_event=cancel_event,
                options=DecodingOptions(
                    task=task,
                    sample_len=sample_len,
                    suppress_blank=suppress_blank,
                    suppress_tokens=tuple(suppress_tokens),
                    without_timestamps=not word_timestamps,
                ),
            )

    def _transcribe(
        self,
        audio: torch.Tensor,
        *,
        language: Optional[str],
        temperatures: Tuple[float, ...],
        compression_ratio_threshold: Optional[float],
        logprob_threshold: Optional[float],
        no_speech_threshold: Optional[float],
        condition_on_previous_text: bool,
        initial_prompt: Optional[str],
        verbose: bool,
        cancel_event: Optional[threading.Event],
        options: DecodingOptions,
    ) -> TranscriptionResult:
        start_time = time.time()
        duration = audio.numel() / SAMPLE_RATE

        # Pad 30 seconds of silence so every window can be sliced to full width
        mel = log_mel_spectrogram(
            audio, n_mels=self.model.dims.n_mels, padding=N_SAMPLES, device=self.device
        )
        content_frames = mel.shape[-1] - N_FRAMES

        if language is None:
            if self.tokenizer.multilingual:
                first_window = self.decoder.embed_audio(pad_or_trim(mel, N_FRAMES))
                language = self.decoder.detect_language(first_window).language
                logger.info(f"Detected language: {language}")
            else:
                language = "en"
        options = replace(options, language=language)

        seek = 0
        all_tokens: List[int] = []
        prompt_reset_since = 0
        segments: List[TranscriptionSegment] = []
        num_windows = skipped_windows = silent_windows = 0

        if initial_prompt is not None:
            all_tokens.extend(self.tokenizer.encode(" " + initial_prompt.strip()))

        with tqdm(total=content_frames, unit="frames", disable=not verbose) as pbar:
            while seek < content_frames:
                previous_seek = seek
                time_offset = seek * HOP_LENGTH / SAMPLE_RATE
                segment_size = min(N_FRAMES, content_frames - seek)
                window_end = time_offset + segment_size * HOP_LENGTH / SAMPLE_RATE
                mel_segment = pad_or_trim(mel[:, seek : seek + segment_size], N_FRAMES)
                audio_features = self.decoder.embed_audio(mel_segment)
                num_windows += 1

                prompt = all_tokens[prompt_reset_since:] if condition_on_previous_text else []
                window_options = replace(options, prompt=prompt)
                try:
                    result = self._decode_with_fallback(
                        audio_features,
                        seek,
                        window_options,
                        temperatures,
                        compression_ratio_threshold,
                        logprob_threshold,
                        cancel_event,
                    )
                except QualityGateExhausted as e:
                    logger.warning(f"Skipping window {time_offset:.2f}s-{window_end:.2f}s: {e}")
                    skipped_windows += 1
                    seek += segment_size
                    pbar.update(seek - previous_seek)
                    continue

                if no_speech_threshold is not None and result.no_speech_prob > no_speech_threshold:
                    pieces, advance = [], segment_size
                else:
                    pieces, advance = self._split_segments(result, seek, segment_size)

                emitted = len(segments)
                for start, end, tokens in pieces:
                    previous_end = segments[-1].end if segments else 0.0
                    start = min(max(time_offset + start, time_offset, previous_end), window_end)
                    end = min(max(time_offset + end, start), window_end)
                    text = self.tokenizer.decode(tokens)
                    if start == end or not text.strip():
                        continue
                    segments.append(
                        TranscriptionSegment(
                            id=len(segments),
                            seek=seek,
                            start=round(start, 3),
                            end=round(end, 3),
                            text=text,
                            tokens=tokens,
                            temperature=result.temperature,
                            avg_logprob=result.avg_logprob,
                            compression_ratio=result.compression_ratio,
                            no_speech_prob=result.no_speech_prob,
                        )
                    )
                    all_tokens.extend(tokens)

                if len(segments) == emitted:
                    silent_windows += 1

                if not condition_on_previous_text or result.temperature > HIGH_TEMPERATURE_THRESHOLD:
                    prompt_reset_since = len(all_tokens)

                seek += advance
                pbar.update(min(content_frames, seek) - previous_seek)

        processing_time = time.time() - start_time
        info = TranscriptionInfo(
            duration=duration,
            num_windows=num_windows,
            skipped_windows=skipped_windows,
            silent_windows=silent_windows,
            language=language,
            device=self.device,
            compute_type=self.compute_type,
            processing_time=processing_time,
        )
        logger.info(
            f"Transcribed {duration:.2f}s of audio in {processing_time:.2f}s "
            f"({num_windows} windows, {skipped_windows} skipped, {silent_windows} silent)"
        )
        return TranscriptionResult(
            text="".join(segment.text for segment in segments),
            segments=tuple(segments),
            language=language,
            info=info,
        )
