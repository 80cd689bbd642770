"""Byte-pair-encoding tokenizer for whisper-torch.

The tokenizer combines a mergeable-rank table, loaded once from a
``.tiktoken`` vocabulary file, with a special-token table derived from the
model's vocabulary size. Once constructed a Tokenizer is never mutated, so
encode/decode are safe to call from several threads.
"""

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from functools import cached_property, lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

import regex

from .errors import TokenizerLoadError

logger = logging.getLogger(__name__)

LANGUAGES = {
    "en": "english",
    "zh": "chinese",
    "de": "german",
    "es": "spanish",
    "ru": "russian",
    "ko": "korean",
    "fr": "french",
    "ja": "japanese",
    "pt": "portuguese",
    "tr": "turkish",
    "pl": "polish",
    "ca": "catalan",
    "nl": "dutch",
    "ar": "arabic",
    "sv": "swedish",
    "it": "italian",
    "id": "indonesian",
    "hi": "hindi",
    "fi": "finnish",
    "vi": "vietnamese",
    "he": "hebrew",
    "uk": "ukrainian",
    "el": "greek",
    "ms": "malay",
    "cs": "czech",
    "ro": "romanian",
    "da": "danish",
    "hu": "hungarian",
    "ta": "tamil",
    "no": "norwegian",
    "th": "thai",
    "ur": "urdu",
    "hr": "croatian",
    "bg": "bulgarian",
    "lt": "lithuanian",
    "la": "latin",
    "mi": "maori",
    "ml": "malayalam",
    "cy": "welsh",
    "sk": "slovak",
    "te": "telugu",
    "fa": "persian",
    "lv": "latvian",
    "bn": "bengali",
    "sr": "serbian",
    "az": "azerbaijani",
    "sl": "slovenian",
    "kn": "kannada",
    "et": "estonian",
    "mk": "macedonian",
    "br": "breton",
    "eu": "basque",
    "is": "icelandic",
    "hy": "armenian",
    "ne": "nepali",
    "mn": "mongolian",
    "bs": "bosnian",
    "kk": "kazakh",
    "sq": "albanian",
    "sw": "swahili",
    "gl": "galician",
    "mr": "marathi",
    "pa": "punjabi",
    "si": "sinhala",
    "km": "khmer",
    "sn": "shona",
    "yo": "yoruba",
    "so": "somali",
    "af": "afrikaans",
    "oc": "occitan",
    "ka": "georgian",
    "be": "belarusian",
    "tg": "tajik",
    "sd": "sindhi",
    "gu": "gujarati",
    "am": "amharic",
    "yi": "yiddish",
    "lo": "lao",
    "uz": "uzbek",
    "fo": "faroese",
    "ht": "haitian creole",
    "ps": "pashto",
    "tk": "turkmen",
    "nn": "nynorsk",
    "mt": "maltese",
    "sa": "sanskrit",
    "lb": "luxembourgish",
    "my": "myanmar",
    "bo": "tibetan",
    "tl": "tagalog",
    "mg": "malagasy",
    "as": "assamese",
    "tt": "tatar",
    "haw": "hawaiian",
    "ln": "lingala",
    "ha": "hausa",
    "ba": "bashkir",
    "jw": "javanese",
    "su": "sundanese",
    "yue": "cantonese",
}

# contractions, letter runs, digit runs, punctuation runs, whitespace runs
PRE_TOKENIZE_PATTERN = (
    r"""'s|'t|'re|'ve|'m|'ll|'d| ?\p{L}+| ?\p{N}+| ?[^\s\p{L}\p{N}]+|\s+(?!\S)|\s+"""
)

MULTILINGUAL_VOCAB_SIZE = 51865
N_TIMESTAMP_TOKENS = 1501  # <|0.00|> ... <|30.00|>
WHITESPACE_TOKEN = 220

VOCAB_FILES = {True: "multilingual.tiktoken", False: "gpt2.tiktoken"}


@dataclass(frozen=True)
class SpecialTokenTable:
    """Ids of the control tokens at the top of the vocabulary.

    The layout depends only on the vocabulary size: multilingual
    vocabularies have one more base token than English-only ones, and
    large-v3 vocabularies add one more language.

    Attributes:
        n_vocab: Vocabulary size the table was derived from
        multilingual: Whether the vocabulary is multilingual
        eot: End-of-text token
        sot: Start-of-transcript token
        language_tokens: Language token ids, in LANGUAGES order
        translate: Translate task token
        transcribe: Transcribe task token
        sot_lm: Start-of-LM token
        sot_prev: Start-of-previous-context token
        no_speech: No-speech token
        no_timestamps: No-timestamps token
        timestamp_begin: Id of the <|0.00|> timestamp token
        whitespace: Token of a single space
    """
    n_vocab: int
    multilingual: bool
    eot: int
    sot: int
    language_tokens: Tuple[int, ...]
    translate: int
    transcribe: int
    sot_lm: int
    sot_prev: int
    no_speech: int
    no_timestamps: int
    timestamp_begin: int
    whitespace: int = WHITESPACE_TOKEN

    @classmethod
    def from_vocab_size(cls, n_vocab: int) -> "SpecialTokenTable":
        multilingual = n_vocab >= MULTILINGUAL_VOCAB_SIZE
        num_languages = n_vocab - 51765 - int(multilingual)
        if not 0 < num_languages <= len(LANGUAGES):
            raise ValueError(
                f"n_vocab {n_vocab} does not match a known Whisper vocabulary layout"
            )
        eot = 50257 if multilingual else 50256
        sot = eot + 1
        language_tokens = tuple(range(sot + 1, sot + 1 + num_languages))
        translate = sot + 1 + num_languages
        return cls(
            n_vocab=n_vocab,
            multilingual=multilingual,
            eot=eot,
            sot=sot,
            language_tokens=language_tokens,
            translate=translate,
            transcribe=translate + 1,
            sot_lm=translate + 2,
            sot_prev=translate + 3,
            no_speech=translate + 4,
            no_timestamps=translate + 5,
            timestamp_begin=translate + 6,
        )

    @property
    def num_languages(self) -> int:
        return len(self.language_tokens)

    @property
    def special_token_begin(self) -> int:
        """Lowest id of the special band; ordinary text tokens are below it."""
        return self.eot

    def token_names(self) -> Dict[str, int]:
        """Literal text of every special token mapped to its id."""
        names = {
            "<|endoftext|>": self.eot,
            "<|startoftranscript|>": self.sot,
        }
        for code, token in zip(LANGUAGES, self.language_tokens):
            names[f"<|{code}|>"] = token
        names.update(
            {
                "<|translate|>": self.translate,
                "<|transcribe|>": self.transcribe,
                "<|startoflm|>": self.sot_lm,
                "<|startofprev|>": self.sot_prev,
                "<|nospeech|>": self.no_speech,
                "<|notimestamps|>": self.no_timestamps,
            }
        )
        for i in range(N_TIMESTAMP_TOKENS):
            names[f"<|{i * 0.02:.2f}|>"] = self.timestamp_begin + i
        return names


def load_ranks(path: str) -> Dict[bytes, int]:
    """Read a mergeable-rank table from a ``.tiktoken`` file.

    Each non-empty line holds a base64-encoded byte sequence and its
    integer rank, separated by a space.

    Raises:
        TokenizerLoadError: If the file is missing or a line is malformed
    """
    if not os.path.isfile(path):
        raise TokenizerLoadError(f"Tokenizer vocabulary '{path}' not found")

    ranks = {}
    with open(path, "rb") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            parts = line.split()
            if len(parts) != 2:
                raise TokenizerLoadError(
                    f"{path}:{lineno}: expected '<base64 token> <rank>', got {line[:40]!r}"
                )
            try:
                token = base64.b64decode(parts[0], validate=True)
                rank = int(parts[1])
            except (binascii.Error, ValueError) as e:
                raise TokenizerLoadError(f"{path}:{lineno}: malformed entry. {str(e)}") from e
            ranks[token] = rank

    if not ranks:
        raise TokenizerLoadError(f"Tokenizer vocabulary '{path}' is empty")
    logger.debug(f"Loaded {len(ranks)} mergeable ranks from '{path}'")
    return ranks


def byte_pair_encode(piece: bytes, ranks: Dict[bytes, int]) -> List[int]:
    """Encode one pre-tokenized chunk with the byte-pair merge rules.

    Repeatedly merges the adjacent pair with the lowest rank, the leftmost
    one on ties, until no adjacent pair is in the table. Each pass is linear
    in the number of parts, so a chunk costs O(len(piece) * merges).
    """
    if piece in ranks:
        return [ranks[piece]]

    # boundaries[i] is the start offset of part i; the last entry is the end
    boundaries = list(range(len(piece) + 1))

    def pair_rank(i: int) -> Optional[int]:
        if i + 2 >= len(boundaries):
            return None
        return ranks.get(piece[boundaries[i]:boundaries[i + 2]])

    pair_ranks = [pair_rank(i) for i in range(len(boundaries) - 1)]
    while len(boundaries) > 2:
        best = None
        for i, rank in enumerate(pair_ranks):
            if rank is not None and (best is None or rank < pair_ranks[best]):
                best = i
        if best is None:
            break
        del boundaries[best + 1]
        del pair_ranks[best + 1]
        pair_ranks[best] = pair_rank(best)
        if best > 0:
            pair_ranks[best - 1] = pair_rank(best - 1)

    return [
        ranks[piece[start:end]] for start, end in zip(boundaries, boundaries[1:])
    ]


class Tokenizer:
    """Byte-pair encoder/decoder with the Whisper special-token table.

    Example:
        >>> tokenizer = get_tokenizer(51865, vocab_path="multilingual.tiktoken")
        >>> tokenizer.decode(tokenizer.encode(" hello world"))
        ' hello world'

    Attributes:
        ranks: Mergeable byte sequences mapped to their rank (= token id)
        special: Special-token ids for this vocabulary size
        language: Default language for sot_sequence()
        task: Default task for sot_sequence()
    """

    def __init__(
        self,
        ranks: Dict[bytes, int],
        n_vocab: int,
        language: Optional[str] = None,
        task: str = "transcribe",
    ):
        missing = [b for b in range(256) if bytes([b]) not in ranks]
        if missing:
            raise TokenizerLoadError(
                f"vocabulary must contain every single byte, missing {len(missing)} "
                f"(first: {missing[0]})"
            )

        self.ranks = ranks
        self.special = SpecialTokenTable.from_vocab_size(n_vocab)
        self.language = language
        self.task = task
        self._decoder = {rank: token for token, rank in ranks.items()}
        self._special_tokens = self.special.token_names()
        self._special_ids = {i: name for name, i in self._special_tokens.items()}
        self._pattern = regex.compile(PRE_TOKENIZE_PATTERN)

    @property
    def n_vocab(self) -> int:
        return self.special.n_vocab

    @property
    def multilingual(self) -> bool:
        return self.special.multilingual

    @property
    def eot(self) -> int:
        return self.special.eot

    @property
    def sot(self) -> int:
        return self.special.sot

    @property
    def transcribe(self) -> int:
        return self.special.transcribe

    @property
    def translate(self) -> int:
        return self.special.translate

    @property
    def no_speech(self) -> int:
        return self.special.no_speech

    @property
    def no_timestamps(self) -> int:
        return self.special.no_timestamps

    @property
    def timestamp_begin(self) -> int:
        return self.special.timestamp_begin

    @cached_property
    def language_codes(self) -> Tuple[str, ...]:
        return tuple(LANGUAGES)[: self.special.num_languages]

    def to_language_token(self, language: str) -> int:
        """Id of the ``<|language|>`` token.

        Raises:
            ValueError: If the vocabulary has no token for the language
        """
        token = self._special_tokens.get(f"<|{language}|>")
        if token is None or token not in self.special.language_tokens:
            raise ValueError(f"Language '{language}' not found in tokenizer.")
        return token

    def sot_sequence(
        self,
        language: Optional[str] = None,
        task: Optional[str] = None,
        no_timestamps: bool = False,
    ) -> Tuple[int, ...]:
        """Initial tokens: start-of-transcript, language, task, no-timestamps.

        The language token is only added for multilingual vocabularies.
        """
        language = language or self.language
        task = task or self.task
        sequence = [self.sot]
        if self.multilingual and language is not None:
            sequence.append(self.to_language_token(language))
        if task == "translate":
            sequence.append(self.translate)
        elif task == "transcribe":
            sequence.append(self.transcribe)
        else:
            raise ValueError(f"task must be 'transcribe' or 'translate', got '{task}'")
        if no_timestamps:
            sequence.append(self.no_timestamps)
        return tuple(sequence)

    def encode(self, text: str) -> List[int]:
        """Encode text to token ids.

        Text equal to a special token's literal name encodes to that single
        id; any other text is byte-pair encoded chunk by chunk.
        """
        special = self._special_tokens.get(text)
        if special is not None:
            return [special]

        tokens = []
        for chunk in self._pattern.findall(text):
            tokens.extend(byte_pair_encode(chunk.encode("utf-8"), self.ranks))
        return tokens

    def _decode_bytes(self, tokens: Sequence[int], render_timestamps: bool) -> str:
        parts = []
        pending = bytearray()
        for token in tokens:
            token = int(token)
            if token in self._special_ids:
                if render_timestamps and token >= self.timestamp_begin:
                    parts.append(pending.decode("utf-8", errors="replace"))
                    pending.clear()
                    parts.append(self._special_ids[token])
                continue
            # ids absent from both tables contribute nothing
            pending.extend(self._decoder.get(token, b""))
        parts.append(pending.decode("utf-8", errors="replace"))
        return "".join(parts)

    def decode(self, tokens: Sequence[int]) -> str:
        """Decode token ids to text, skipping every special token."""
        return self._decode_bytes(tokens, render_timestamps=False)

    def decode_with_timestamps(self, tokens: Sequence[int]) -> str:
        """Decode token ids to text, rendering timestamps as ``<|1.08|>``."""
        return self._decode_bytes(tokens, render_timestamps=True)

    def convert_token_to_id(self, token: str) -> Optional[int]:
        special = self._special_tokens.get(token)
        if special is not None:
            return special
        encoded = self.encode(token)
        return encoded[0] if encoded else None

    def convert_id_to_token(self, token_id: int) -> Optional[str]:
        if token_id in self._special_ids:
            return self._special_ids[token_id]
        token = self._decoder.get(token_id)
        if token is None:
            return None
        return token.decode("utf-8", errors="replace")

    def is_special(self, token: int) -> bool:
        return token >= self.special.special_token_begin


def find_vocab_file(
    multilingual: bool,
    vocab_path: Optional[str] = None,
    model_dir: Optional[str] = None,
) -> str:
    """Locate the vocabulary file for a model.

    Raises:
        TokenizerLoadError: If no vocabulary file can be found
    """
    if vocab_path is not None:
        vocab_path = os.fspath(vocab_path)
        if not os.path.isfile(vocab_path):
            raise TokenizerLoadError(f"Tokenizer vocabulary '{vocab_path}' not found")
        return vocab_path

    if model_dir is not None:
        names = [VOCAB_FILES[multilingual], VOCAB_FILES[not multilingual]]
        for name in names:
            candidate = os.path.join(model_dir, name)
            if os.path.isfile(candidate):
                return candidate

    raise TokenizerLoadError(
        f"No tokenizer vocabulary found (looked for '{VOCAB_FILES[multilingual]}' "
        f"in {model_dir!r}). Pass vocab_path to point at a .tiktoken file"
    )


@lru_cache(maxsize=None)
def _load_tokenizer(path: str, n_vocab: int) -> Tokenizer:
    return Tokenizer(load_ranks(path), n_vocab)


def get_tokenizer(
    n_vocab: int,
    vocab_path: Optional[str] = None,
    model_dir: Optional[str] = None,
) -> Tokenizer:
    """Load (once) and return the tokenizer for a vocabulary size.

    Tokenizers are memoized per vocabulary file and size, so repeated
    calls share the same immutable tables.
    """
    multilingual = n_vocab >= MULTILINGUAL_VOCAB_SIZE
    path = find_vocab_file(multilingual, vocab_path=vocab_path, model_dir=model_dir)
    return _load_tokenizer(os.path.abspath(path), n_vocab)
