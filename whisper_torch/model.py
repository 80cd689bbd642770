"""Whisper encoder-decoder transformer in PyTorch.

This module defines the audio encoder, the text decoder, the explicit
key/value cache used for incremental decoding, and a small registry that
maps a configuration's ``model_type`` tag to a model class.
"""

import logging
import math
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple, Type

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from .data_models import ModelDimensions
from .errors import ModelLoadError

logger = logging.getLogger(__name__)

MODEL_REGISTRY: Dict[str, Type[nn.Module]] = {}


def register_model(name: str) -> Callable[[Type[nn.Module]], Type[nn.Module]]:
    """Class decorator adding a model architecture to MODEL_REGISTRY."""

    def decorator(cls: Type[nn.Module]) -> Type[nn.Module]:
        if name in MODEL_REGISTRY:
            raise ValueError(f"model type '{name}' is already registered")
        MODEL_REGISTRY[name] = cls
        return cls

    return decorator


def create_model(model_type: str, dims: ModelDimensions) -> nn.Module:
    """Instantiate the architecture registered under ``model_type``.

    Raises:
        ModelLoadError: If no architecture is registered under that name
    """
    cls = MODEL_REGISTRY.get(model_type)
    if cls is None:
        raise ModelLoadError(
            f"Unsupported model type '{model_type}'. "
            f"Available types: {sorted(MODEL_REGISTRY)}"
        )
    return cls(dims)


@lru_cache(maxsize=None)
def _sinusoid_table(length: int, channels: int, max_timescale: float) -> Tensor:
    if channels % 2 != 0:
        raise ValueError(f"channels must be even, got {channels}")
    log_timescale_increment = math.log(max_timescale) / (channels // 2 - 1)
    inv_timescales = torch.exp(
        -log_timescale_increment * torch.arange(channels // 2, dtype=torch.float32)
    )
    scaled_time = torch.arange(length, dtype=torch.float32)[:, None] * inv_timescales[None, :]
    return torch.cat([torch.sin(scaled_time), torch.cos(scaled_time)], dim=1)


def sinusoids(length: int, channels: int, max_timescale: float = 10000) -> Tensor:
    """Sinusoidal positional table of shape [length, channels].

    Frequencies are log-spaced over half the channels; sines fill the first
    half and cosines the second. Memoized by its arguments; a copy is returned.
    """
    return _sinusoid_table(length, channels, float(max_timescale)).clone()


def causal_mask(n_query: int, offset: int = 0, device=None) -> Tensor:
    """Additive mask letting query ``i`` (absolute position ``offset + i``)
    see keys ``0 .. offset + i`` and nothing after."""
    return torch.full((n_query, offset + n_query), float("-inf"), device=device).triu_(
        offset + 1
    )


class KVCache:
    """Key/value tensors of one decode session.

    Self-attention entries grow by one position per decode step; the
    cross-attention entries are computed once from the audio features and
    reused. A cache belongs to exactly one decode session and must not be
    shared between concurrent sessions.

    Attributes:
        self_attn: Per decoder layer (key, value) of the token positions seen so far
        cross_attn: Per decoder layer (key, value) of the audio features
    """

    def __init__(self, n_layer: int):
        self.n_layer = n_layer
        self.self_attn: List[Optional[Tuple[Tensor, Tensor]]] = [None] * n_layer
        self.cross_attn: List[Optional[Tuple[Tensor, Tensor]]] = [None] * n_layer

    @property
    def offset(self) -> int:
        """Number of token positions already cached."""
        entry = self.self_attn[0]
        return 0 if entry is None else entry[0].shape[1]

    def reset(self):
        self.self_attn = [None] * self.n_layer
        self.cross_attn = [None] * self.n_layer


class MultiHeadAttention(nn.Module):
    def __init__(self, n_state: int, n_head: int):
        super().__init__()
        if n_state % n_head != 0:
            raise ValueError(
                f"n_state ({n_state}) must be divisible by n_head ({n_head})"
            )
        self.n_head = n_head
        self.query = nn.Linear(n_state, n_state)
        self.key = nn.Linear(n_state, n_state, bias=False)
        self.value = nn.Linear(n_state, n_state)
        self.out = nn.Linear(n_state, n_state)

    def forward(
        self,
        x: Tensor,
        xa: Optional[Tensor] = None,
        mask: Optional[Tensor] = None,
        kv_cache: Optional[Tuple[Tensor, Tensor]] = None,
    ) -> Tuple[Tensor, Tuple[Tensor, Tensor]]:
        q = self.query(x)

        if xa is None:
            k = self.key(x)
            v = self.value(x)
            if kv_cache is not None:
                k = torch.cat([kv_cache[0], k], dim=1)
                v = torch.cat([kv_cache[1], v], dim=1)
        elif kv_cache is None:
            k = self.key(xa)
            v = self.value(xa)
        else:
            k, v = kv_cache

        return self.out(self.qkv_attention(q, k, v, mask)), (k, v)

    def qkv_attention(
        self, q: Tensor, k: Tensor, v: Tensor, mask: Optional[Tensor] = None
    ) -> Tensor:
        n_batch, n_ctx, n_state = q.shape
        # 1/sqrt(head_dim) split evenly between queries and keys
        scale = (n_state // self.n_head) ** -0.25
        q = q.view(*q.shape[:2], self.n_head, -1).permute(0, 2, 1, 3) * scale
        k = k.view(*k.shape[:2], self.n_head, -1).permute(0, 2, 3, 1) * scale
        v = v.view(*v.shape[:2], self.n_head, -1).permute(0, 2, 1, 3)

        qk = q @ k
        if mask is not None:
            qk = qk + mask
        w = F.softmax(qk.float(), dim=-1).to(q.dtype)
        return (w @ v).permute(0, 2, 1, 3).reshape(n_batch, n_ctx, n_state)


class ResidualAttentionBlock(nn.Module):
    def __init__(self, n_state: int, n_head: int, cross_attention: bool = False):
        super().__init__()
        self.attn = MultiHeadAttention(n_state, n_head)
        self.attn_ln = nn.LayerNorm(n_state)

        self.cross_attn = MultiHeadAttention(n_state, n_head) if cross_attention else None
        self.cross_attn_ln = nn.LayerNorm(n_state) if cross_attention else None

        n_mlp = n_state * 4
        self.mlp1 = nn.Linear(n_state, n_mlp)
        self.mlp2 = nn.Linear(n_mlp, n_state)
        self.mlp_ln = nn.LayerNorm(n_state)

    def forward(
        self,
        x: Tensor,
        xa: Optional[Tensor] = None,
        mask: Optional[Tensor] = None,
        kv_cache: Optional[KVCache] = None,
        layer: int = 0,
    ) -> Tensor:
        self_kv = kv_cache.self_attn[layer] if kv_cache is not None else None
        y, self_kv = self.attn(self.attn_ln(x), mask=mask, kv_cache=self_kv)
        x = x + y

        if self.cross_attn is not None:
            cross_kv = kv_cache.cross_attn[layer] if kv_cache is not None else None
            y, cross_kv = self.cross_attn(self.cross_attn_ln(x), xa, kv_cache=cross_kv)
            x = x + y
            if kv_cache is not None:
                kv_cache.cross_attn[layer] = cross_kv

        if kv_cache is not None:
            kv_cache.self_attn[layer] = self_kv

        x = x + self.mlp2(F.gelu(self.mlp1(self.mlp_ln(x))))
        return x


class AudioEncoder(nn.Module):
    def __init__(self, n_mels: int, n_ctx: int, n_state: int, n_head: int, n_layer: int):
        super().__init__()
        self.conv1 = nn.Conv1d(n_mels, n_state, kernel_size=3, padding=1)
        self.conv2 = nn.Conv1d(n_state, n_state, kernel_size=3, stride=2, padding=1)
        self.register_buffer("positional_embedding", sinusoids(n_ctx, n_state), persistent=False)

        self.blocks = nn.ModuleList(
            [ResidualAttentionBlock(n_state, n_head) for _ in range(n_layer)]
        )
        self.ln_post = nn.LayerNorm(n_state)

    def forward(self, x: Tensor) -> Tensor:
        """
        x : Tensor, shape = (batch_size, n_mels, n_frames)
            the mel spectrogram of the audio
        """
        x = F.gelu(self.conv1(x))
        x = F.gelu(self.conv2(x))
        x = x.permute(0, 2, 1)

        if x.shape[1:] != self.positional_embedding.shape:
            raise ValueError(
                f"incorrect audio shape: encoder expects {self.positional_embedding.shape[0] * 2} "
                f"mel frames, got {x.shape[1] * 2}"
            )
        x = x + self.positional_embedding.to(x.dtype)

        for block in self.blocks:
            x = block(x)

        return self.ln_post(x)


class TextDecoder(nn.Module):
    def __init__(self, n_vocab: int, n_ctx: int, n_state: int, n_head: int, n_layer: int):
        super().__init__()
        self.n_ctx = n_ctx
        self.token_embedding = nn.Embedding(n_vocab, n_state)
        self.positional_embedding = nn.Parameter(torch.empty(n_ctx, n_state))
        nn.init.normal_(self.positional_embedding, std=0.01)

        self.blocks = nn.ModuleList(
            [
                ResidualAttentionBlock(n_state, n_head, cross_attention=True)
                for _ in range(n_layer)
            ]
        )
        self.ln = nn.LayerNorm(n_state)

    def forward(self, x: Tensor, xa: Tensor, kv_cache: Optional[KVCache] = None) -> Tensor:
        """
        x : Tensor, shape = (batch_size, n_tokens)
            the text tokens; only the new ones when a populated cache is given
        xa : Tensor, shape = (batch_size, n_audio_ctx, n_audio_state)
            the encoded audio features to be attended on
        """
        offset = kv_cache.offset if kv_cache is not None else 0
        n_tokens = x.shape[-1]
        if offset + n_tokens > self.n_ctx:
            raise ValueError(
                f"token sequence of length {offset + n_tokens} exceeds n_text_ctx ({self.n_ctx})"
            )

        x = self.token_embedding(x) + self.positional_embedding[offset : offset + n_tokens]
        x = x.to(xa.dtype)
        mask = causal_mask(n_tokens, offset, device=x.device)

        for i, block in enumerate(self.blocks):
            x = block(x, xa, mask=mask, kv_cache=kv_cache, layer=i)

        x = self.ln(x)
        # output projection tied to the token embedding
        return (x @ self.token_embedding.weight.to(x.dtype).T).float()


@register_model("whisper")
class Whisper(nn.Module):
    """Whisper speech recognition model.

    Attributes:
        dims: Architecture hyperparameters
        encoder: Audio encoder
        decoder: Text decoder
    """

    def __init__(self, dims: ModelDimensions):
        super().__init__()
        self.dims = dims
        self.encoder = AudioEncoder(
            dims.n_mels,
            dims.n_audio_ctx,
            dims.n_audio_state,
            dims.n_audio_head,
            dims.n_audio_layer,
        )
        self.decoder = TextDecoder(
            dims.n_vocab,
            dims.n_text_ctx,
            dims.n_text_state,
            dims.n_text_head,
            dims.n_text_layer,
        )

    @property
    def device(self) -> torch.device:
        return next(self.parameters()).device

    @property
    def is_multilingual(self) -> bool:
        return self.dims.n_vocab >= 51865

    @property
    def num_languages(self) -> int:
        return self.dims.n_vocab - 51765 - int(self.is_multilingual)

    def new_kv_cache(self) -> KVCache:
        return KVCache(self.dims.n_text_layer)

    def embed_audio(self, mel: Tensor) -> Tensor:
        return self.encoder(mel)

    def logits(
        self, tokens: Tensor, audio_features: Tensor, kv_cache: Optional[KVCache] = None
    ) -> Tensor:
        return self.decoder(tokens, audio_features, kv_cache=kv_cache)

    def forward(self, mel: Tensor, tokens: Tensor) -> Tensor:
        return self.decoder(tokens, self.encoder(mel))
