# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
File and Model Loading Utilities
================================

Resolves checkpoint references and builds ready-to-use models from them.

A file reference is one of:

- a ``Path`` or plain local path
- ``hf://owner/repo/path/to/file``, downloaded from the HuggingFace Hub
- ``file:///path/to/file``, always read locally
- a plain filename together with ``hf_repo``, downloaded from that repo

Loading failures (missing files, unreadable checkpoints, missing or
unexpected parameters) are reported as ``ModelLoadError``.
"""

import json
from pathlib import Path

from huggingface_hub import hf_hub_download
import mlx.core as mx
import mlx.nn as nn
import sentencepiece

from ..models.lm import Lm, LmConfig
from ..models.mimi import Mimi, mimi_202407


class ModelLoadError(RuntimeError):
    """A model, codec or vocabulary could not be loaded."""


def hf_get(
    filename: str | Path,
    hf_repo: str | None = None,
    check_local_file_exists: bool = False,
) -> Path:
    """
    Resolve a file reference to a local path, downloading it if needed.

    Examples:
        >>> hf_get("hf://kyutai/stt-1b-en_fr-mlx/config.json")
        PosixPath('/path/to/cache/config.json')
        >>> hf_get("config.json", hf_repo="kyutai/stt-1b-en_fr-mlx")
        PosixPath('/path/to/cache/config.json')
    """
    if isinstance(filename, Path):
        return filename
    if filename.startswith("hf://"):
        parts = filename.removeprefix("hf://").split("/")
        repo_name = parts[0] + "/" + parts[1]
        filename = "/".join(parts[2:])
        return Path(hf_hub_download(repo_name, filename))
    elif filename.startswith("file://"):
        # Provide a way to force the read of a local file.
        filename = filename.removeprefix("file://")
        return Path(filename)
    elif hf_repo is not None:
        if check_local_file_exists:
            if Path(filename).exists():
                return Path(filename)
        return Path(hf_hub_download(hf_repo, filename))
    else:
        return Path(filename)


def load_vocab(path: str | Path) -> dict[int, str]:
    """
    Load a token id to piece mapping.

    ``.json`` files hold a ``{"id": "piece"}`` object; anything else is read
    as a SentencePiece model.
    """
    path = Path(path)
    try:
        if path.suffix == ".json":
            with open(path, "r") as fobj:
                data = json.load(fobj)
            return {int(k): v for k, v in data.items()}
        sp = sentencepiece.SentencePieceProcessor(str(path))  # type: ignore
        return {i: sp.id_to_piece(i) for i in range(sp.get_piece_size())}  # type: ignore
    except (OSError, ValueError, RuntimeError) as e:
        raise ModelLoadError(f"cannot load vocabulary {path}: {e}") from e


def load_lm_config(path: str | Path) -> tuple[LmConfig, dict]:
    """Read a ``config.json``, returns the parsed config and the raw dict."""
    try:
        with open(path, "r") as fobj:
            raw = json.load(fobj)
        return LmConfig.from_config_dict(raw), raw
    except (OSError, ValueError) as e:
        raise ModelLoadError(f"cannot load lm config {path}: {e}") from e


def load_lm(
    weights: str | Path,
    cfg: LmConfig,
    dtype: mx.Dtype = mx.bfloat16,
) -> Lm:
    """
    Build an ``Lm`` and load its weights in strict mode.

    Checkpoints named ``*.q4.safetensors`` / ``*.q8.safetensors`` are
    quantized, the model is quantized the same way before loading.
    """
    weights = str(weights)
    model = Lm(cfg)
    model.set_dtype(dtype)
    if weights.endswith(".q4.safetensors"):
        nn.quantize(model, bits=4, group_size=32)
    elif weights.endswith(".q8.safetensors"):
        nn.quantize(model, bits=8, group_size=64)
    try:
        model.load_weights(weights, strict=True)
    except (OSError, ValueError, RuntimeError) as e:
        raise ModelLoadError(f"cannot load lm weights {weights}: {e}") from e
    return model


def load_mimi(weights: str | Path, num_codebooks: int = 32) -> Mimi:
    """
    Build the Mimi codec and load a PyTorch-named checkpoint in strict mode.
    """
    weights = str(weights)
    model = Mimi(mimi_202407(num_codebooks))
    try:
        model.load_pytorch_weights(weights, strict=True)
    except (OSError, ValueError, RuntimeError) as e:
        raise ModelLoadError(f"cannot load mimi weights {weights}: {e}") from e
    return model
