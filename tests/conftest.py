"""Shared fixtures: a tiny random-weight Whisper model directory."""

import base64
import json
import os

import numpy as np
import pytest
import torch
from safetensors.torch import save_file

from whisper_torch import WhisperTranscriber, get_tokenizer
from whisper_torch.data_models import ModelDimensions
from whisper_torch.model import Whisper

TINY_DIMS = ModelDimensions(
    n_mels=80,
    n_audio_ctx=1500,
    n_audio_state=32,
    n_audio_head=2,
    n_audio_layer=1,
    n_vocab=51865,
    n_text_ctx=448,
    n_text_state=32,
    n_text_head=2,
    n_text_layer=1,
)

MERGES = [
    b"he", b"ll", b"hell", b"hello", b" h", b" hello",
    b"or", b" w", b" wor", b"ld", b" world",
    b"as", b"ask", b" n", b"ot", b" not", b" a", b" ask",
]


def build_ranks():
    """256 single bytes (space at 220, as in GPT-2) followed by a few merges."""
    order = list(range(256))
    order[32], order[220] = order[220], order[32]
    ranks = {bytes([b]): rank for rank, b in enumerate(order)}
    for merge in MERGES:
        ranks[merge] = len(ranks)
    return ranks


def write_vocab(path, ranks):
    with open(path, "w") as f:
        for token, rank in ranks.items():
            f.write(f"{base64.b64encode(token).decode()} {rank}\n")


def write_config(model_dir, dims, **extra):
    config = {"model_type": "whisper", **dims.to_dict(), **extra}
    with open(os.path.join(model_dir, "config.json"), "w") as f:
        json.dump(config, f)


def generate_test_audio(duration=3.0, sr=16000):
    """Generate synthetic test audio."""
    t = np.linspace(0, duration, int(sr * duration), endpoint=False)
    audio = (
        0.5 * np.sin(2 * np.pi * 220 * t)
        + 0.3 * np.sin(2 * np.pi * 440 * t)
        + 0.2 * np.sin(2 * np.pi * 660 * t)
    )
    return audio.astype(np.float32)


@pytest.fixture(scope="session")
def tiny_model():
    torch.manual_seed(0)
    return Whisper(TINY_DIMS).eval()


@pytest.fixture(scope="session")
def model_dir(tmp_path_factory, tiny_model):
    path = tmp_path_factory.mktemp("whisper-tiny-random")
    write_config(str(path), TINY_DIMS)
    save_file(tiny_model.state_dict(), str(path / "model.safetensors"))
    write_vocab(str(path / "multilingual.tiktoken"), build_ranks())
    return str(path)


@pytest.fixture(scope="session")
def tokenizer(model_dir):
    return get_tokenizer(TINY_DIMS.n_vocab, model_dir=model_dir)


@pytest.fixture
def transcriber(model_dir):
    return WhisperTranscriber(model_dir, device="cpu", compute_type="float32")
