"""Tests for the byte-pair tokenizer and special-token table."""

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from whisper_torch import TokenizerLoadError
from whisper_torch.tokenizer import (
    SpecialTokenTable,
    Tokenizer,
    byte_pair_encode,
    find_vocab_file,
    get_tokenizer,
    load_ranks,
)

from conftest import build_ranks, write_vocab


class TestSpecialTokenTable:
    """Test special-token offsets derived from the vocabulary size."""

    def test_large_v3_layout(self):
        """Test the 100-language layout of large-v3."""
        table = SpecialTokenTable.from_vocab_size(51866)
        assert table.multilingual
        assert table.eot == 50257
        assert table.sot == 50258
        assert table.language_tokens[0] == 50259
        assert table.num_languages == 100
        assert table.translate == 50359
        assert table.transcribe == 50360
        assert table.no_speech == 50363
        assert table.no_timestamps == 50364
        assert table.timestamp_begin == 50365

    def test_multilingual_layout(self):
        """Test the 99-language multilingual layout."""
        table = SpecialTokenTable.from_vocab_size(51865)
        assert table.num_languages == 99
        assert table.translate == 50358
        assert table.transcribe == 50359
        assert table.no_speech == 50362
        assert table.no_timestamps == 50363
        assert table.timestamp_begin == 50364
        assert table.timestamp_begin + 1501 == 51865

    def test_english_only_layout(self):
        """Test the English-only layout shifts every token down by one."""
        table = SpecialTokenTable.from_vocab_size(51864)
        assert not table.multilingual
        assert table.eot == 50256
        assert table.sot == 50257
        assert table.transcribe == 50358
        assert table.no_timestamps == 50362
        assert table.timestamp_begin == 50363

    def test_whitespace_token(self):
        """Test the whitespace token is fixed."""
        assert SpecialTokenTable.from_vocab_size(51865).whitespace == 220

    def test_unknown_vocab_size(self):
        """Test vocabulary sizes without a known layout raise ValueError."""
        with pytest.raises(ValueError, match="does not match"):
            SpecialTokenTable.from_vocab_size(1000)

    def test_token_names(self):
        """Test literal names map to the expected ids."""
        names = SpecialTokenTable.from_vocab_size(51865).token_names()
        assert names["<|en|>"] == 50259
        assert names["<|su|>"] == 50357
        assert "<|yue|>" not in names
        assert names["<|0.00|>"] == 50364
        assert names["<|30.00|>"] == 51864


class TestBytePairEncode:
    """Test the merge loop."""

    def test_lowest_rank_first(self):
        """Test the lowest-ranked pair is merged first."""
        ranks = {b"a": 0, b"b": 1, b"c": 2, b"bc": 3, b"ab": 4}
        assert byte_pair_encode(b"abc", ranks) == [0, 3]

    def test_leftmost_on_tie(self):
        """Test equal-rank pairs merge leftmost first."""
        ranks = {b"a": 0, b"aa": 1}
        assert byte_pair_encode(b"aaa", ranks) == [1, 0]

    def test_whole_piece_shortcut(self):
        """Test a piece present in the table encodes to its rank."""
        ranks = {b"x": 0, b"y": 1, b"xy": 7}
        assert byte_pair_encode(b"xy", ranks) == [7]

    def test_no_merges(self):
        """Test pieces without mergeable pairs fall back to single bytes."""
        ranks = {b"a": 0, b"b": 1}
        assert byte_pair_encode(b"abba", ranks) == [0, 1, 1, 0]


class TestTokenizer:
    """Test encoding and decoding with the fixture vocabulary."""

    def test_encode_merged_words(self, tokenizer):
        """Test known words encode to their merged tokens."""
        ranks = tokenizer.ranks
        assert tokenizer.encode(" hello world") == [ranks[b" hello"], ranks[b" world"]]

    def test_encode_special_literal(self, tokenizer):
        """Test a special token literal short-circuits to its id."""
        assert tokenizer.encode("<|startoftranscript|>") == [tokenizer.sot]
        assert tokenizer.encode("<|1.00|>") == [tokenizer.timestamp_begin + 50]

    def test_decode_skips_special_tokens(self, tokenizer):
        """Test control tokens never appear in decoded text."""
        tokens = [tokenizer.sot, tokenizer.to_language_token("en"), tokenizer.transcribe]
        tokens += tokenizer.encode(" hello") + [tokenizer.timestamp_begin + 10, tokenizer.eot]
        assert tokenizer.decode(tokens) == " hello"

    def test_decode_with_timestamps(self, tokenizer):
        """Test timestamps are rendered by decode_with_timestamps."""
        tokens = [tokenizer.timestamp_begin] + tokenizer.encode(" hello")
        tokens.append(tokenizer.timestamp_begin + 54)
        assert tokenizer.decode_with_timestamps(tokens) == "<|0.00|> hello<|1.08|>"

    def test_decode_unknown_id_is_empty(self, tokenizer):
        """Test ids missing from both tables contribute nothing."""
        unknown = 40000  # between the fixture merges and the special band
        assert tokenizer.decode(tokenizer.encode(" hello") + [unknown]) == " hello"

    def test_convert_token_and_id(self, tokenizer):
        """Test token/id conversion in both directions."""
        assert tokenizer.convert_token_to_id("<|transcribe|>") == tokenizer.transcribe
        assert tokenizer.convert_token_to_id(" hello") == tokenizer.ranks[b" hello"]
        assert tokenizer.convert_id_to_token(tokenizer.eot) == "<|endoftext|>"
        assert tokenizer.convert_id_to_token(tokenizer.ranks[b" world"]) == " world"
        assert tokenizer.convert_id_to_token(40000) is None

    def test_sot_sequence(self, tokenizer):
        """Test the initial sequence layout."""
        assert tokenizer.sot_sequence("de", "translate", no_timestamps=True) == (
            tokenizer.sot,
            tokenizer.to_language_token("de"),
            tokenizer.translate,
            tokenizer.no_timestamps,
        )

    def test_unknown_language(self, tokenizer):
        """Test unknown language codes raise ValueError."""
        with pytest.raises(ValueError, match="Language 'xx' not found"):
            tokenizer.to_language_token("xx")

    def test_language_codes(self, tokenizer):
        """Test the multilingual vocabulary exposes 99 languages."""
        assert len(tokenizer.language_codes) == 99
        assert tokenizer.language_codes[:3] == ("en", "zh", "de")

    @settings(max_examples=200, deadline=None)
    @given(st.text())
    def test_encode_is_deterministic(self, tokenizer, text):
        """Test encoding the same string twice gives the same ids."""
        assert tokenizer.encode(text) == tokenizer.encode(text)

    @settings(max_examples=200, deadline=None)
    @given(st.text())
    def test_round_trip(self, tokenizer, text):
        """Test decode(encode(text)) reproduces text without special literals."""
        assume(text not in tokenizer.special.token_names())
        assert tokenizer.decode(tokenizer.encode(text)) == text


class TestVocabularyLoading:
    """Test loading the vocabulary artifact."""

    def test_load_ranks(self, tmp_path):
        """Test a well-formed file loads every entry."""
        path = tmp_path / "vocab.tiktoken"
        write_vocab(str(path), build_ranks())
        assert load_ranks(str(path)) == build_ranks()

    def test_missing_file(self, tmp_path):
        """Test missing vocabulary raises TokenizerLoadError."""
        with pytest.raises(TokenizerLoadError, match="not found"):
            load_ranks(str(tmp_path / "missing.tiktoken"))

    def test_malformed_line(self, tmp_path):
        """Test a malformed line reports its line number."""
        path = tmp_path / "bad.tiktoken"
        path.write_text("YQ== 0\nnot-base64! x\n")
        with pytest.raises(TokenizerLoadError, match="bad.tiktoken:2"):
            load_ranks(str(path))

    def test_missing_single_bytes(self):
        """Test vocabularies without all 256 bytes are rejected."""
        with pytest.raises(TokenizerLoadError, match="every single byte"):
            Tokenizer({b"a": 0}, 51865)

    def test_tokenizer_load_error_is_file_not_found(self, tmp_path):
        """Test TokenizerLoadError can be caught as FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            find_vocab_file(True, model_dir=str(tmp_path))

    def test_find_vocab_in_model_dir(self, model_dir):
        """Test the vocabulary is found in the model directory."""
        assert find_vocab_file(True, model_dir=model_dir).endswith("multilingual.tiktoken")

    def test_get_tokenizer_is_memoized(self, model_dir):
        """Test repeated loads share one tokenizer."""
        assert get_tokenizer(51865, model_dir=model_dir) is get_tokenizer(
            51865, model_dir=model_dir
        )
