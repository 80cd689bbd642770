"""Model artifact loading for whisper-torch.

Resolves a model directory (local path or Hugging Face Hub repository),
reads its configuration, and loads its weight archives through an explicit,
versioned rename table into the in-memory module tree.
"""

import glob
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import torch
from huggingface_hub import snapshot_download
from safetensors.torch import load_file
from torch import nn

from .data_models import ModelDimensions
from .errors import ModelLoadError
from .model import create_model

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
ARTIFACT_PATTERNS = ["*.safetensors", "*.npz", "*.json", "*.tiktoken"]

# transformers configuration names -> ModelDimensions names
HF_CONFIG_KEYS = {
    "num_mel_bins": "n_mels",
    "max_source_positions": "n_audio_ctx",
    "d_model": ("n_audio_state", "n_text_state"),
    "encoder_attention_heads": "n_audio_head",
    "encoder_layers": "n_audio_layer",
    "vocab_size": "n_vocab",
    "max_target_positions": "n_text_ctx",
    "decoder_attention_heads": "n_text_head",
    "decoder_layers": "n_text_layer",
}


@dataclass(frozen=True)
class RenameTable:
    """Ordered rewrite rules from on-disk parameter names to module names.

    Each rule is a full-match regular expression and a replacement
    template; a replacement of None drops the tensor. Names no rule
    matches are kept as they are.

    Attributes:
        version: Table identifier
        rules: (pattern, replacement) pairs, first match wins
    """
    version: str
    rules: Tuple[Tuple[str, Optional[str]], ...]

    def rename(self, name: str) -> Optional[str]:
        for pattern, replacement in self.rules:
            match = re.fullmatch(pattern, name)
            if match is None:
                continue
            if replacement is None:
                return None
            return match.expand(replacement)
        return name


# OpenAI checkpoints and MLX conversions
WHISPER_V1 = RenameTable(
    version="whisper-v1",
    rules=(
        (r"encoder\.positional_embedding", None),
        (r"(.+)\.mlp\.0\.(weight|bias)", r"\1.mlp1.\2"),
        (r"(.+)\.mlp\.2\.(weight|bias)", r"\1.mlp2.\2"),
    ),
)

_HF_LAYER = r"model\.(encoder|decoder)\.layers\.(\d+)\."
_HF_PROJ = {"q": "query", "k": "key", "v": "value", "out": "out"}

# Hugging Face transformers checkpoints
HF_V1 = RenameTable(
    version="hf-v1",
    rules=(
        (r"model\.encoder\.embed_positions\.weight", None),
        (r"proj_out\.weight", None),
        (r"model\.encoder\.conv([12])\.(weight|bias)", r"encoder.conv\1.\2"),
        (r"model\.encoder\.layer_norm\.(weight|bias)", r"encoder.ln_post.\1"),
        (r"model\.decoder\.layer_norm\.(weight|bias)", r"decoder.ln.\1"),
        (r"model\.decoder\.embed_tokens\.weight", r"decoder.token_embedding.weight"),
        (r"model\.decoder\.embed_positions\.weight", r"decoder.positional_embedding"),
    )
    + tuple(
        (_HF_LAYER + rf"self_attn\.{proj}_proj\.(weight|bias)", rf"\1.blocks.\2.attn.{name}.\3")
        for proj, name in _HF_PROJ.items()
    )
    + tuple(
        (_HF_LAYER + rf"encoder_attn\.{proj}_proj\.(weight|bias)", rf"\1.blocks.\2.cross_attn.{name}.\3")
        for proj, name in _HF_PROJ.items()
    )
    + (
        (_HF_LAYER + r"self_attn_layer_norm\.(weight|bias)", r"\1.blocks.\2.attn_ln.\3"),
        (_HF_LAYER + r"encoder_attn_layer_norm\.(weight|bias)", r"\1.blocks.\2.cross_attn_ln.\3"),
        (_HF_LAYER + r"fc1\.(weight|bias)", r"\1.blocks.\2.mlp1.\3"),
        (_HF_LAYER + r"fc2\.(weight|bias)", r"\1.blocks.\2.mlp2.\3"),
        (_HF_LAYER + r"final_layer_norm\.(weight|bias)", r"\1.blocks.\2.mlp_ln.\3"),
    ),
)

RENAME_TABLES = {table.version: table for table in (WHISPER_V1, HF_V1)}


def select_rename_table(names: Sequence[str]) -> RenameTable:
    """Pick the rename table matching the naming convention of an archive."""
    if any(name.startswith(("model.encoder.", "model.decoder.")) for name in names):
        return HF_V1
    return WHISPER_V1


def resolve_model_path(name_or_path: str, download_root: Optional[str] = None) -> str:
    """Return a local directory holding the model artifacts.

    Existing directories are used as they are. Anything else is treated as
    a Hub repository id and fetched with ``snapshot_download``; when the
    network is unavailable the local Hub cache is used instead.

    Raises:
        ModelLoadError: If the model is neither local, downloadable nor cached
    """
    if os.path.isdir(name_or_path):
        return name_or_path

    try:
        return snapshot_download(
            repo_id=name_or_path,
            allow_patterns=ARTIFACT_PATTERNS,
            cache_dir=download_root,
        )
    except Exception as e:
        logger.warning(
            f"Could not download '{name_or_path}' ({type(e).__name__}: {e}), "
            f"trying the local cache"
        )
        try:
            return snapshot_download(
                repo_id=name_or_path,
                allow_patterns=ARTIFACT_PATTERNS,
                cache_dir=download_root,
                local_files_only=True,
            )
        except Exception as local_error:
            raise ModelLoadError(
                f"Model '{name_or_path}' not found. It is not a local directory, "
                f"could not be downloaded and is not in the local cache. {str(e)}"
            ) from local_error


def _translate_hf_config(config: Dict) -> Dict:
    translated = dict(config)
    for hf_key, names in HF_CONFIG_KEYS.items():
        if hf_key not in config:
            continue
        for name in (names,) if isinstance(names, str) else names:
            translated.setdefault(name, config[hf_key])
    return translated


def load_config(model_dir: str) -> Tuple[ModelDimensions, str]:
    """Read ``config.json`` from a model directory.

    Returns:
        dims: Model dimensions
        model_type: Architecture tag (default "whisper")

    Raises:
        ModelLoadError: If the file is missing or invalid, or the model is quantized
    """
    path = os.path.join(model_dir, CONFIG_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except FileNotFoundError as e:
        raise ModelLoadError(f"Model configuration '{path}' not found") from e
    except json.JSONDecodeError as e:
        raise ModelLoadError(f"Model configuration '{path}' is not valid JSON. {str(e)}") from e

    if not isinstance(config, dict):
        raise ModelLoadError(f"Model configuration '{path}' must be a JSON object")

    config = dict(config)
    model_type = config.pop("model_type", None) or "whisper"
    quantization = config.pop("quantization", None)
    if quantization is not None:
        raise ModelLoadError(
            f"Quantized models are not supported (quantization={quantization!r})"
        )
    if "n_mels" not in config and "d_model" in config:
        config = _translate_hf_config(config)

    return ModelDimensions.from_dict(config), model_type


def load_weight_archives(model_dir: str) -> Dict[str, torch.Tensor]:
    """Load every ``*.safetensors`` and ``*.npz`` archive in a directory.

    Raises:
        ModelLoadError: If there is no archive or one cannot be read
    """
    paths = sorted(
        glob.glob(os.path.join(model_dir, "*.safetensors"))
        + glob.glob(os.path.join(model_dir, "*.npz"))
    )
    if not paths:
        raise ModelLoadError(f"No *.safetensors or *.npz weights found in '{model_dir}'")

    weights = {}
    for path in paths:
        try:
            if path.endswith(".safetensors"):
                weights.update(load_file(path))
            else:
                with np.load(path) as archive:
                    for name in archive.files:
                        weights[name] = torch.from_numpy(np.array(archive[name]))
        except Exception as e:
            raise ModelLoadError(f"Failed to read weight archive '{path}'. {str(e)}") from e
        logger.debug(f"Read weight archive '{path}'")
    return weights


def remap_weights(
    weights: Dict[str, torch.Tensor],
    expected: Dict[str, torch.Tensor],
    table: Optional[RenameTable] = None,
) -> Dict[str, torch.Tensor]:
    """Rename archive tensors to module names and validate them.

    Args:
        weights: Tensors keyed by on-disk name
        expected: Target state dict (only names and shapes are used)
        table: Rename table; chosen from the archive names when None

    Returns:
        Tensors keyed by module name, exactly covering ``expected``

    Raises:
        ModelLoadError: If a required tensor is missing or has the wrong shape
    """
    if table is None:
        table = select_rename_table(list(weights))
    logger.debug(f"Remapping {len(weights)} tensors with rename table '{table.version}'")

    mapped = {}
    for name, tensor in weights.items():
        target = table.rename(name)
        if target is None or target not in expected:
            logger.debug(f"Dropping unmapped tensor '{name}'")
            continue

        shape = expected[target].shape
        if tensor.ndim == 3 and tensor.shape != shape and tensor.permute(0, 2, 1).shape == shape:
            # channel-last convolution kernel [out, k, in]
            tensor = tensor.permute(0, 2, 1).contiguous()
        if tensor.shape != shape:
            raise ModelLoadError(
                f"Shape mismatch for '{target}' (from '{name}'): "
                f"checkpoint has {tuple(tensor.shape)}, model expects {tuple(shape)}"
            )
        mapped[target] = tensor

    missing = sorted(set(expected) - set(mapped))
    if missing:
        preview = ", ".join(missing[:5])
        raise ModelLoadError(
            f"Weights are missing {len(missing)} required tensors: {preview}"
            + (", ..." if len(missing) > 5 else "")
        )
    return mapped


def load_model(
    name_or_path: str,
    device: str = "cpu",
    download_root: Optional[str] = None,
) -> nn.Module:
    """Load a model in eval mode on ``device``.

    Args:
        name_or_path: Model directory or Hub repository id
        device: Device to place the model on
        download_root: Optional cache directory for Hub downloads

    Raises:
        ModelLoadError: If the configuration or weights are missing or invalid
    """
    model_dir = resolve_model_path(name_or_path, download_root)
    dims, model_type = load_config(model_dir)
    logger.info(f"Loading {model_type} model from '{model_dir}' ({dims})")

    model = create_model(model_type, dims)
    state = remap_weights(load_weight_archives(model_dir), model.state_dict())
    model.load_state_dict({name: tensor.float() for name, tensor in state.items()})
    return model.to(device).eval()
