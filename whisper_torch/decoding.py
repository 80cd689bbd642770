"""Autoregressive decoding engine for whisper-torch.

This module turns the audio features of one 30-second window into a token
sequence: it builds the initial prompt, selects tokens greedily or by
sampling, applies the suppression rules, and stops on end-of-text or on
one of the runaway-generation safety nets.
"""

import logging
import threading
import zlib
from contextlib import nullcontext
from typing import List, Optional

import torch
import torch.nn.functional as F
from torch import Tensor

from .data_models import DecodingOptions, DecodingResult, LanguageDetectionResult
from .errors import DecodingCancelled, OutOfVocabularyToken
from .model import Whisper
from .tokenizer import Tokenizer

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ZEROS = 10
MAX_TRIGRAM_REPEATS = 2


def compression_ratio(text: str) -> float:
    """UTF-8 length of ``text`` over its zlib-compressed length."""
    text_bytes = text.encode("utf-8")
    return len(text_bytes) / len(zlib.compress(text_bytes))


class DecodingEngine:
    """Samples token sequences for single audio windows.

    One engine can be reused for any number of windows; every ``decode``
    call owns a fresh KV cache, so no decoder state leaks between calls.
    The engine itself does not serialize access to the model: callers that
    share a model between threads must hold a lock around each call.

    Attributes:
        model: Whisper model in eval mode
        tokenizer: Tokenizer matching the model's vocabulary
        use_kv_cache: Decode incrementally instead of recomputing every step
        fp16: Run the model under float16 autocast (CUDA only)
    """

    def __init__(
        self,
        model: Whisper,
        tokenizer: Tokenizer,
        use_kv_cache: bool = True,
        fp16: bool = False,
    ):
        if tokenizer.n_vocab != model.dims.n_vocab:
            raise ValueError(
                f"tokenizer vocabulary ({tokenizer.n_vocab}) does not match "
                f"model vocabulary ({model.dims.n_vocab})"
            )
        self.model = model
        self.tokenizer = tokenizer
        self.use_kv_cache = use_kv_cache
        self.fp16 = fp16 and model.device.type == "cuda"

    def _autocast(self):
        if self.fp16:
            return torch.autocast(device_type="cuda", dtype=torch.float16)
        return nullcontext()

    def _audio_features(self, mel_or_features: Tensor) -> Tensor:
        dims = self.model.dims
        x = mel_or_features.to(self.model.device)
        if x.ndim == 2:
            x = x.unsqueeze(0)
        if x.shape[-2:] == (dims.n_audio_ctx, dims.n_audio_state):
            return x
        if x.shape[-2] != dims.n_mels:
            raise ValueError(
                f"expected a mel spectrogram with {dims.n_mels} bins or audio features "
                f"of shape ({dims.n_audio_ctx}, {dims.n_audio_state}), got {tuple(x.shape)}"
            )
        with self._autocast():
            return self.model.embed_audio(x.float())

    @torch.inference_mode()
    def embed_audio(self, mel: Tensor) -> Tensor:
        """Encode a [n_mels, n_frames] mel window into audio features."""
        return self._audio_features(mel)

    @torch.inference_mode()
    def detect_language(self, mel_or_features: Tensor) -> LanguageDetectionResult:
        """Detect the spoken language from one decoder step after <|startoftranscript|>.

        Raises:
            ValueError: If the model is English-only
        """
        if not self.tokenizer.multilingual:
            raise ValueError("This model doesn't have language tokens so it can't perform lang id")

        audio_features = self._audio_features(mel_or_features)
        tokens = torch.tensor([[self.tokenizer.sot]], device=audio_features.device)
        with self._autocast():
            logits = self.model.logits(tokens, audio_features)[0, -1]

        language_tokens = list(self.tokenizer.special.language_tokens)
        probs = F.softmax(logits[language_tokens].float(), dim=-1).tolist()
        probabilities = dict(zip(self.tokenizer.language_codes, probs))
        language = max(probabilities, key=probabilities.get)
        logger.debug(f"Detected language '{language}' (p={probabilities[language]:.3f})")
        return LanguageDetectionResult(language=language, probabilities=probabilities)

    def initial_tokens(self, options: DecodingOptions, language: Optional[str]) -> List[int]:
        """Start-of-transcript, language, task, no-timestamps, then the prompt."""
        tokens = list(
            self.tokenizer.sot_sequence(
                language=language,
                task=options.task,
                no_timestamps=options.without_timestamps,
            )
        )
        prompt = list(options.prompt)
        max_prompt = self.model.dims.n_text_ctx // 2 - 1
        if len(prompt) > max_prompt:
            prompt = prompt[-max_prompt:]
        return tokens + prompt

    def _select(self, logits: Tensor, temperature: float):
        if temperature == 0:
            logprobs = F.log_softmax(logits, dim=-1)
            token = int(logits.argmax())
        else:
            scaled = logits / temperature
            logprobs = F.log_softmax(scaled, dim=-1)
            token = int(torch.distributions.Categorical(logits=scaled).sample())
        if not 0 <= token < self.model.dims.n_vocab:
            raise OutOfVocabularyToken(token, self.model.dims.n_vocab)
        return token, float(logprobs[token])

    def _suppress(self, logits: Tensor, generated: List[int], options: DecodingOptions):
        n_vocab = logits.shape[-1]
        if options.suppress_blank and not generated:
            logits[self.tokenizer.special.whitespace] = float("-inf")
        for token in options.suppress_tokens:
            if 0 <= token < n_vocab:
                logits[token] = float("-inf")
        if len(generated) >= 3 and len(set(generated[-3:])) == 1:
            repeated = generated[-1]
            if not self.tokenizer.is_special(repeated):
                logits[repeated] = float("-inf")

    @torch.inference_mode()
    def decode(
        self,
        mel_or_features: Tensor,
        options: DecodingOptions,
        cancel_event: Optional[threading.Event] = None,
    ) -> DecodingResult:
        """Decode one window.

        Out-of-vocabulary selections and runaway repetition stop generation
        early and keep the partial sequence; they never raise.

        Args:
            mel_or_features: A [n_mels, 3000] mel window or encoded audio features
            options: Decoding options
            cancel_event: When set, decoding stops before the next step

        Returns:
            Result with the generated tokens (initial tokens and end token excluded)

        Raises:
            DecodingCancelled: If ``cancel_event`` is set
            ValueError: If the requested language is unknown
        """
        audio_features = self._audio_features(mel_or_features)
        device = audio_features.device

        language = options.language
        language_probs = None
        if not self.tokenizer.multilingual:
            language = "en"
        elif language is None:
            detection = self.detect_language(audio_features)
            language, language_probs = detection.language, detection.probabilities

        initial = self.initial_tokens(options, language)
        n_text_ctx = self.model.dims.n_text_ctx
        sample_len = options.sample_len or n_text_ctx // 2
        max_tokens = min(sample_len, n_text_ctx - len(initial))

        kv_cache = self.model.new_kv_cache() if self.use_kv_cache else None
        generated: List[int] = []
        logprobs: List[float] = []
        truncated = False
        stop_reason = "max_tokens"
        consecutive_zeros = 0
        trigram_repeats = 0

        def step_logits(tokens: List[int]) -> Tensor:
            x = torch.tensor([tokens], device=device)
            with self._autocast():
                return self.model.logits(x, audio_features, kv_cache=kv_cache)[0, -1].float()

        logits = step_logits(initial)
        no_speech_prob = float(F.softmax(logits, dim=-1)[self.tokenizer.no_speech])

        for step in range(max_tokens):
            if cancel_event is not None and cancel_event.is_set():
                raise DecodingCancelled(f"decoding cancelled after {step} steps")

            if step > 0:
                sequence = generated[-1:] if kv_cache is not None else initial + generated
                logits = step_logits(sequence)

            self._suppress(logits, generated, options)
            try:
                token, logprob = self._select(logits, options.temperature)
            except OutOfVocabularyToken as e:
                logger.warning(f"Stopping window decode: {e}")
                truncated = True
                stop_reason = "out_of_vocabulary"
                break

            if token == 0:
                consecutive_zeros += 1
                if consecutive_zeros >= MAX_CONSECUTIVE_ZEROS:
                    stop_reason = "consecutive_zeros"
                    break
            elif not self.tokenizer.is_special(token):
                consecutive_zeros = 0

            if token == self.tokenizer.eot:
                stop_reason = "end_of_text"
                break

            generated.append(token)
            logprobs.append(logprob)

            if len(generated) >= 6 and generated[-6:-3] == generated[-3:]:
                trigram_repeats += 1
                if trigram_repeats >= MAX_TRIGRAM_REPEATS:
                    stop_reason = "repetition"
                    break
            else:
                trigram_repeats = 0

            if step > 10:
                recent = generated[-10:]
                blanks = sum(t in (0, self.tokenizer.special.whitespace) for t in recent)
                if blanks >= 8:
                    stop_reason = "blank_run"
                    break

        text = self.tokenizer.decode(generated)
        avg_logprob = sum(logprobs) / len(logprobs) if logprobs else 0.0
        result = DecodingResult(
            tokens=generated,
            text=text,
            avg_logprob=avg_logprob,
            no_speech_prob=no_speech_prob,
            compression_ratio=compression_ratio(text),
            temperature=options.temperature,
            language=language,
            language_probs=language_probs,
            truncated=truncated,
            stop_reason=stop_reason,
        )
        logger.debug(
            f"Decoded {len(generated)} tokens at temperature {options.temperature} "
            f"(stop={stop_reason}, avg_logprob={avg_logprob:.3f}, "
            f"compression_ratio={result.compression_ratio:.2f}, no_speech_prob={no_speech_prob:.3f})"
        )
        return result
