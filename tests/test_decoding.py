"""Tests for the decoding engine."""

import threading

import pytest
import torch

from whisper_torch import DecodingCancelled, DecodingOptions
from whisper_torch.decoding import DecodingEngine, compression_ratio
from whisper_torch.errors import OutOfVocabularyToken
from whisper_torch.model import Whisper
from whisper_torch.tokenizer import Tokenizer

from conftest import TINY_DIMS, build_ranks

ENGLISH = DecodingOptions(language="en", without_timestamps=True, sample_len=8)


@pytest.fixture
def engine(tiny_model, tokenizer):
    return DecodingEngine(tiny_model, tokenizer)


@pytest.fixture(scope="module")
def features():
    torch.manual_seed(1)
    return torch.randn(TINY_DIMS.n_audio_ctx, TINY_DIMS.n_audio_state)


def script(engine, monkeypatch, tokens, logprob=-0.5):
    """Make the engine select ``tokens`` in order instead of sampling."""
    selections = iter(tokens)

    def fake_select(logits, temperature):
        return next(selections), logprob

    monkeypatch.setattr(engine, "_select", fake_select)


class TestCompressionRatio:
    """Test the repetitiveness measure."""

    def test_repetitive_text_compresses_well(self):
        """Test repeated text has a high ratio."""
        assert compression_ratio("ask not " * 100) > 10

    def test_short_text(self):
        """Test short text has a ratio below 1."""
        assert compression_ratio("hi") < 1


class TestEngineSetup:
    """Test engine construction and language detection."""

    def test_vocabulary_mismatch(self, tiny_model):
        """Test a tokenizer of another vocabulary size is rejected."""
        with pytest.raises(ValueError, match="does not match model vocabulary"):
            DecodingEngine(tiny_model, Tokenizer(build_ranks(), 51864))

    def test_fp16_ignored_on_cpu(self, tiny_model, tokenizer):
        """Test float16 autocast is only enabled on CUDA."""
        assert DecodingEngine(tiny_model, tokenizer, fp16=True).fp16 is False

    def test_detect_language_distribution(self, engine, features):
        """Test language probabilities cover every language and sum to 1."""
        detection = engine.detect_language(features)
        assert len(detection.probabilities) == engine.tokenizer.special.num_languages
        assert sum(detection.probabilities.values()) == pytest.approx(1.0, abs=1e-4)
        assert detection.language == max(detection.probabilities, key=detection.probabilities.get)

    def test_detect_language_english_only(self):
        """Test English-only models cannot detect language."""
        torch.manual_seed(0)
        dims = TINY_DIMS.to_dict()
        dims["n_vocab"] = 51864
        model = Whisper(type(TINY_DIMS)(**dims)).eval()
        engine = DecodingEngine(model, Tokenizer(build_ranks(), 51864))
        with pytest.raises(ValueError, match="doesn't have language tokens"):
            engine.detect_language(torch.zeros(80, 3000))

    def test_mel_input_is_encoded(self, engine):
        """Test mel windows and encoded features are both accepted."""
        features = engine.embed_audio(torch.zeros(80, 3000))
        assert features.shape == (1, TINY_DIMS.n_audio_ctx, TINY_DIMS.n_audio_state)
        with pytest.raises(ValueError, match="expected a mel spectrogram"):
            engine.embed_audio(torch.zeros(40, 3000))


class TestInitialTokens:
    """Test the initial token sequence."""

    def test_layout(self, engine, tokenizer):
        """Test start, language, task and no-timestamps tokens."""
        tokens = engine.initial_tokens(ENGLISH, "en")
        assert tokens == [
            tokenizer.sot,
            tokenizer.to_language_token("en"),
            tokenizer.transcribe,
            tokenizer.no_timestamps,
        ]

    def test_translate_with_timestamps(self, engine, tokenizer):
        """Test the translate task without the no-timestamps token."""
        options = DecodingOptions(task="translate")
        tokens = engine.initial_tokens(options, "de")
        assert tokens == [tokenizer.sot, tokenizer.to_language_token("de"), tokenizer.translate]

    def test_prompt_is_trimmed_to_half_context(self, engine):
        """Test only the last n_text_ctx // 2 - 1 prompt tokens are kept."""
        prompt = list(range(300))
        tokens = engine.initial_tokens(DecodingOptions(prompt=prompt), "en")
        kept = TINY_DIMS.n_text_ctx // 2 - 1
        assert tokens[-kept:] == prompt[-kept:]
        assert len(tokens) == 3 + kept


class TestDecode:
    """Test decoding with the tiny random model."""

    def test_greedy_is_deterministic(self, engine, features):
        """Test two greedy decodes give identical tokens."""
        first = engine.decode(features, ENGLISH)
        second = engine.decode(features, ENGLISH)
        assert first.tokens == second.tokens
        assert first.avg_logprob == second.avg_logprob

    def test_kv_cache_matches_full_recompute(self, tiny_model, tokenizer, features):
        """Test incremental decoding equals recomputing every step."""
        cached = DecodingEngine(tiny_model, tokenizer, use_kv_cache=True)
        uncached = DecodingEngine(tiny_model, tokenizer, use_kv_cache=False)
        assert cached.decode(features, ENGLISH).tokens == uncached.decode(features, ENGLISH).tokens

    def test_result_fields(self, engine, features, tokenizer):
        """Test the result excludes initial tokens and stays within sample_len."""
        result = engine.decode(features, ENGLISH)
        assert len(result.tokens) <= 8
        assert tokenizer.eot not in result.tokens
        assert 0.0 <= result.no_speech_prob <= 1.0
        assert result.language == "en"
        assert result.temperature == 0.0
        assert not result.truncated

    def test_suppressed_tokens_never_generated(self, engine, features, tokenizer, monkeypatch):
        """Test a suppressed id is never generated even when it is the most likely."""
        favourites = torch.zeros(TINY_DIMS.n_vocab)
        favourites[300] = 10.0
        favourites[301] = 5.0
        favourites[tokenizer.eot] = 1.0

        def fake_logits(tokens, audio_features, kv_cache=None):
            return favourites.expand(1, tokens.shape[1], -1).clone()

        monkeypatch.setattr(engine.model, "logits", fake_logits)
        plain = engine.decode(features, ENGLISH)
        assert plain.tokens[0] == 300

        options = DecodingOptions(
            language="en", without_timestamps=True, sample_len=8, suppress_tokens=(300, -1)
        )
        result = engine.decode(features, options)
        assert 300 not in result.tokens
        # 301 three times, then the repeat rule leaves only end-of-text
        assert result.tokens == [301, 301, 301]
        assert result.stop_reason == "end_of_text"

    def test_sampling_with_temperature(self, engine, features):
        """Test sampling at a positive temperature yields in-range tokens."""
        torch.manual_seed(3)
        options = DecodingOptions(language="en", temperature=1.0, sample_len=5)
        result = engine.decode(features, options)
        assert all(0 <= token < TINY_DIMS.n_vocab for token in result.tokens)
        assert result.temperature == 1.0

    def test_language_detected_when_missing(self, engine, features):
        """Test the language is detected when options do not set one."""
        result = engine.decode(features, DecodingOptions(sample_len=2))
        assert result.language in engine.tokenizer.language_codes
        assert result.language_probs is not None

    def test_cancel_event(self, engine, features):
        """Test a set cancel event stops decoding."""
        event = threading.Event()
        event.set()
        with pytest.raises(DecodingCancelled):
            engine.decode(features, ENGLISH, cancel_event=event)


class TestStopConditions:
    """Test the stop rules with scripted token selections."""

    def test_end_of_text_not_included(self, engine, features, tokenizer, monkeypatch):
        """Test generation stops at end-of-text, which is not kept."""
        script(engine, monkeypatch, [300, 301, tokenizer.eot, 302])
        result = engine.decode(features, ENGLISH)
        assert result.tokens == [300, 301]
        assert result.stop_reason == "end_of_text"
        assert result.avg_logprob == pytest.approx(-0.5)

    def test_max_tokens(self, engine, features, monkeypatch):
        """Test sample_len bounds the generated length."""
        script(engine, monkeypatch, range(300, 400))
        result = engine.decode(features, DecodingOptions(language="en", sample_len=4))
        assert result.tokens == [300, 301, 302, 303]
        assert result.stop_reason == "max_tokens"

    def test_out_of_vocabulary_truncates(self, engine, features, monkeypatch):
        """Test an out-of-vocabulary id keeps the partial result."""
        selections = iter([300, 301])

        def fake_select(logits, temperature):
            token = next(selections, None)
            if token is None:
                raise OutOfVocabularyToken(99999, TINY_DIMS.n_vocab)
            return token, -0.1

        monkeypatch.setattr(engine, "_select", fake_select)
        result = engine.decode(features, ENGLISH)
        assert result.tokens == [300, 301]
        assert result.truncated
        assert result.stop_reason == "out_of_vocabulary"

    def test_repeated_trigram(self, engine, features, monkeypatch):
        """Test a trigram repeated twice in a row stops generation."""
        script(engine, monkeypatch, [300, 301, 302] * 10)
        result = engine.decode(features, DecodingOptions(language="en", sample_len=50))
        assert result.tokens == [300, 301, 302, 300, 301, 302, 300]
        assert result.stop_reason == "repetition"

    def test_consecutive_zeros(self, engine, features, tokenizer, monkeypatch):
        """Test ten zero tokens without intervening text stop generation."""
        tokens = []
        for i in range(20):
            tokens += [0, tokenizer.timestamp_begin + i]
        script(engine, monkeypatch, tokens)
        result = engine.decode(features, DecodingOptions(language="en", sample_len=100))
        assert result.stop_reason == "consecutive_zeros"
        assert len(result.tokens) == 18
        assert result.tokens.count(0) == 9

    def test_blank_run(self, engine, features, monkeypatch):
        """Test a run of blank tokens stops generation."""
        w, z = 220, 0
        script(engine, monkeypatch, [w, w, z, w, z, z, w, w, w, z, w, z, w, w, z, z])
        result = engine.decode(features, DecodingOptions(language="en", sample_len=100))
        assert result.stop_reason == "blank_run"
        assert len(result.tokens) == 12


class TestSuppression:
    """Test the logit suppression rules."""

    def suppress(self, engine, generated, **options):
        logits = torch.zeros(TINY_DIMS.n_vocab)
        engine._suppress(logits, generated, DecodingOptions(**options))
        return logits

    def test_blank_suppressed_at_first_position(self, engine):
        """Test the whitespace token is blocked before anything is generated."""
        logits = self.suppress(engine, [])
        assert logits[220] == float("-inf")
        assert int(torch.isinf(logits).sum()) == 1

    def test_blank_allowed_after_first_position(self, engine):
        """Test the whitespace token is allowed once a token was generated."""
        assert self.suppress(engine, [300])[220] == 0.0

    def test_suppress_blank_disabled(self, engine):
        """Test suppress_blank=False leaves the whitespace token alone."""
        assert self.suppress(engine, [], suppress_blank=False)[220] == 0.0

    def test_configured_tokens(self, engine):
        """Test configured ids are blocked and negative ids are ignored."""
        logits = self.suppress(engine, [300], suppress_tokens=(-1, 5, 7))
        assert logits[5] == float("-inf")
        assert logits[7] == float("-inf")
        assert int(torch.isinf(logits).sum()) == 2

    def test_triple_repeat_blocked(self, engine):
        """Test a text token generated three times in a row is blocked."""
        assert self.suppress(engine, [12, 300, 300, 300])[300] == float("-inf")
        assert self.suppress(engine, [300, 301, 300])[300] == 0.0

    def test_triple_repeat_of_special_token_allowed(self, engine, tokenizer):
        """Test special tokens are exempt from the repeat rule."""
        tb = tokenizer.timestamp_begin
        assert self.suppress(engine, [tb, tb, tb])[tb] == 0.0
