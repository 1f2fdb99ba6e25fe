# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Language Model
==============

The language model reads the audio codes produced by Mimi and predicts one
text token per 80 ms frame. It is the "temporal" transformer of the Moshi
architecture; the speech-to-text checkpoints use it alone, while the speech
generating checkpoints add a small "depth" transformer (the depformer) that
predicts the audio codebooks of a frame one after the other.

=============================================================================
ONE STEP
=============================================================================

At step ``t`` the input of the temporal transformer is the sum of one
embedding per stream::

    x_t = text_emb(text_{t-1}) + sum_k audio_embs[k](audio_{t,k})

The transformer output goes through ``out_norm`` and ``text_linear`` to give
the text logits. When a depformer is configured, slice ``k`` then predicts
audio codebook ``k`` from the transformer output and the token chosen by
slice ``k - 1`` (the fresh text token for slice 0).

=============================================================================
KEY CLASSES
=============================================================================

- LmConfig: configuration of the whole model, ``from_config_dict`` reads the
  ``config.json`` shipped with the checkpoints
- DepFormerConfig: configuration of the depformer
- ScaledEmbedding: embedding with a "zero" index and optional low rank
- DepFormer / DepFormerSlice: the depth transformer
- Lm: the model, with ``step_main`` for the speech-to-text loop and
  ``sample`` for the full text + audio step

=============================================================================
CONFIGURATION FUNCTIONS
=============================================================================

- config_asr_300m(), config_asr_1b(), config_asr_2b(): speech-to-text models,
  32 input codebooks and no depformer
- config_v0_1(), config1b_202412(): speech generating models with a depformer
"""

from dataclasses import dataclass

import mlx.core as mx
import mlx.nn as nn

from ..modules.kv_cache import KVCache
from ..modules.transformer import LayerCache, Transformer, TransformerConfig, make_norm
from ..utils import sampling
from ..utils.perf import Callbacks, EventKind


@dataclass
class DepFormerConfig:
    """
    Configuration for the depth transformer.

    Attributes:
        transformer: Configuration shared by the transformer of every slice
        num_slices: Number of generated audio codebooks, one slice each
        low_rank_embeddings: Inner dimension of factorized slice embeddings
    """

    transformer: TransformerConfig
    num_slices: int
    low_rank_embeddings: int | None = None


_REQUIRED_KEYS = (
    "dim",
    "num_heads",
    "num_layers",
    "causal",
    "layer_scale",
    "context",
    "max_period",
    "positional_embedding",
    "text_card",
    "card",
    "n_q",
    "dep_q",
    "delays",
)


@dataclass
class LmConfig:
    """
    Configuration for the language model.

    Vocabulary layout:

    - text: ``text_out_vocab_size`` real tokens; the input side has one more
      entry, ``text_in_vocab_size - 1``, used as the initial token of a
      stream (``text_init_token``).
    - audio: ``audio_vocab_size - 1`` codes, the last index is the padding
      token fed while a codebook has nothing to show yet.

    Attributes:
        transformer: Configuration of the temporal transformer
        depformer: Configuration of the depth transformer, None when the
            model only predicts text
        text_in_vocab_size: Size of the text input embedding
        text_out_vocab_size: Number of text logits
        audio_vocab_size: Size of each audio input embedding
        audio_codebooks: Number of audio streams read by the model
        audio_delays: Delay in steps of each audio stream
        extra_heads_num_heads: Number of auxiliary output heads
        extra_heads_dim: Output size of each auxiliary head
    """

    transformer: TransformerConfig
    depformer: DepFormerConfig | None
    text_in_vocab_size: int
    text_out_vocab_size: int
    audio_vocab_size: int
    audio_codebooks: int
    audio_delays: list[int]
    extra_heads_num_heads: int = 0
    extra_heads_dim: int = 6

    @property
    def generated_codebooks(self) -> int:
        """Number of audio codebooks produced by the depformer."""
        if self.depformer is None:
            return 0
        return self.depformer.num_slices

    @property
    def other_codebooks(self) -> int:
        """Number of audio codebooks supplied from outside (the encoded input)."""
        return self.audio_codebooks - self.generated_codebooks

    @property
    def audio_padding_token(self) -> int:
        return self.audio_vocab_size - 1

    @property
    def text_init_token(self) -> int:
        return self.text_in_vocab_size - 1

    @classmethod
    def from_config_dict(cls, data: dict) -> "LmConfig":
        """
        Build a configuration from the ``config.json`` of a checkpoint.

        ``delays[0]`` is the text delay and is always 0, the audio delays are
        the remaining entries. A ``dep_q`` of 0 gives a text-only model.

        Raises:
            ValueError: if a required key is missing.
        """
        missing = [k for k in _REQUIRED_KEYS if k not in data]
        if missing:
            raise ValueError(f"missing keys in lm config: {missing}")
        transformer = TransformerConfig(
            d_model=data["dim"],
            num_heads=data["num_heads"],
            num_layers=data["num_layers"],
            dim_feedforward=4 * data["dim"],
            causal=data["causal"],
            norm_first=True,
            bias_ff=False,
            bias_attn=False,
            layer_scale=data["layer_scale"],
            context=data["context"],
            max_period=data["max_period"],
            use_conv_bias=True,
            gating=True,
            norm="rms_norm",
            positional_embedding=data["positional_embedding"],
            conv_layout=False,
            kv_repeat=data.get("kv_repeat", 1),
            max_seq_len=4096,
        )
        depformer = None
        if data["dep_q"] > 0:
            depformer = DepFormerConfig(
                transformer=TransformerConfig(
                    d_model=data["depformer_dim"],
                    num_heads=data["depformer_num_heads"],
                    num_layers=data["depformer_num_layers"],
                    dim_feedforward=data["depformer_dim_feedforward"],
                    causal=data.get("depformer_causal", True),
                    norm_first=True,
                    bias_ff=False,
                    bias_attn=data.get("depformer_layer_scale", False),
                    layer_scale=None,
                    context=data.get("depformer_context", data["dep_q"]),
                    max_period=data.get("depformer_max_period", 8),
                    use_conv_bias=True,
                    gating=True,
                    norm="rms_norm",
                    positional_embedding=data["depformer_pos_emb"],
                    conv_layout=False,
                    kv_repeat=1,
                    max_seq_len=4096,
                ),
                num_slices=data["dep_q"],
                low_rank_embeddings=data.get("depformer_low_rank_embeddings", None),
            )
        return LmConfig(
            transformer=transformer,
            depformer=depformer,
            text_in_vocab_size=data["text_card"] + 1,
            text_out_vocab_size=data["text_card"],
            audio_vocab_size=data["card"] + 1,
            audio_delays=data["delays"][1:],
            audio_codebooks=data["n_q"],
            extra_heads_dim=data.get("extra_heads_dim", 6),
            extra_heads_num_heads=data.get("extra_heads_num_heads", 0),
        )


class ScaledEmbedding(nn.Embedding):
    """
    Embedding with a reserved "zero" index and optional low-rank factorization.

    Looking up ``zero_idx`` (``-1``) gives an all-zero vector; the generator
    uses it for positions that must not contribute to the input sum. With
    ``low_rank`` the table is ``[num_embeddings, low_rank]`` followed by a
    ``low_rank -> embedding_dim`` projection.

    Args:
        num_embeddings: Vocabulary size
        embedding_dim: Output dimension
        zero_idx: Negative index mapped to zeros
        low_rank: Inner dimension of the factorized table
    """

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        zero_idx: int = -1,
        low_rank: int | None = None,
    ):
        super().__init__(num_embeddings, low_rank or embedding_dim)
        if zero_idx >= 0:
            raise ValueError(f"zero_idx must be negative, got {zero_idx}")
        self.num_embeddings = num_embeddings
        self.zero_idx = zero_idx
        self.low_rank = None
        if low_rank is not None:
            self.low_rank = nn.Linear(low_rank, embedding_dim, bias=False)

    def __call__(self, input: mx.array) -> mx.array:
        # Signed ids, so that `zero_idx` can be compared against.
        input = input.astype(mx.int32)
        is_zero = input == self.zero_idx
        zero = mx.zeros(1, dtype=self.weight.dtype)
        input = mx.maximum(input, 0)
        y = self.weight[input]
        y = mx.where(is_zero[..., None], zero, y)
        if self.low_rank is not None:
            y = self.low_rank(y)
        return y


class DepFormerSlice(nn.Module):
    """
    One step of the depth transformer, predicting a single audio codebook.

    ``linear_in`` maps the temporal transformer output to the depformer width,
    ``emb`` embeds the previous token of the chain and ``linear_out`` gives
    the ``audio_vocab_size - 1`` logits (the padding token is never
    predicted).
    """

    def __init__(
        self,
        in_vocab_size: int,
        out_vocab_size: int,
        main_transformer_dim: int,
        cfg: DepFormerConfig,
    ):
        super().__init__()

        dim = cfg.transformer.d_model
        self.emb = ScaledEmbedding(in_vocab_size, dim, low_rank=cfg.low_rank_embeddings)
        self.linear_in = nn.Linear(main_transformer_dim, dim, bias=False)
        self.linear_out = nn.Linear(dim, out_vocab_size, bias=False)
        self.transformer = Transformer(cfg.transformer)


class DepFormer(nn.Module):
    """
    Depth transformer generating the audio codebooks of one frame.

    The slices share a single cache which is reset at the start of every
    frame: the depformer only attends within the current frame.
    """

    def __init__(self, cfg: LmConfig):
        super().__init__()

        if cfg.depformer is None:
            raise ValueError("DepFormer requires a depformer configuration")
        self.cfg = cfg
        self.slices: list[DepFormerSlice] = []
        for slice_idx in range(cfg.depformer.num_slices):
            in_vs = cfg.text_in_vocab_size if slice_idx == 0 else cfg.audio_vocab_size
            slice = DepFormerSlice(
                in_vs,
                cfg.audio_vocab_size - 1,
                main_transformer_dim=cfg.transformer.d_model,
                cfg=cfg.depformer,
            )
            self.slices.append(slice)

    def sample(
        self,
        main_transformer_out: mx.array,
        step_idx: int,
        sampler: sampling.Sampler,
        text_token: mx.array,
        cache: list[LayerCache],
    ) -> mx.array:
        """
        Sample one token per slice.

        Args:
            main_transformer_out: Normalized temporal transformer output [B, 1, D]
            step_idx: Index of the current step in the generation
            sampler: Sampler used for every slice
            text_token: Text token sampled at this step [B]
            cache: Shared depformer cache, reset here

        Returns:
            Audio tokens [B, num_slices]

        Slice ``k > 0`` is fed the padding token instead of the token of slice
        ``k - 1`` while ``step_idx`` is within the delay of codebook ``k - 1``,
        the value that codebook is given as input at that point.
        """
        for c in cache:
            c.reset()
        tokens = []
        last_token = text_token
        padding = self.cfg.audio_padding_token
        for slice_idx, slice in enumerate(self.slices):
            if slice_idx != 0 and step_idx < self.cfg.audio_delays[slice_idx - 1]:
                last_token = mx.full(text_token.shape, padding, dtype=mx.int32)
            xs = slice.linear_in(main_transformer_out) + slice.emb(last_token[:, None])
            xs = slice.transformer(xs, cache=cache)
            logits = slice.linear_out(xs)
            last_token, _ = sampler(logits[:, 0])
            tokens.append(last_token)
        return mx.stack(tokens, axis=1)


class Lm(nn.Module):
    """
    The language model.

    Parameters are laid out as in the published MLX checkpoints:
    ``transformer``, ``text_emb``, ``audio_embs``, ``out_norm``,
    ``text_linear``, ``extra_heads`` and, for speech generating models,
    ``depformer.slices``.

    The temporal transformer uses a growable cache and attends to the last
    ``context`` steps. ``reset_cache`` starts a new stream.

    Example:
        >>> model = Lm(config_asr_1b())
        >>> model.load_weights("model.safetensors", strict=True)
        >>> out, logits = model.step_main(text_ids, audio_ids)
    """

    def __init__(self, cfg: LmConfig):
        super().__init__()

        dim = cfg.transformer.d_model
        self.cfg: LmConfig = cfg
        self.transformer: Transformer = Transformer(cfg.transformer)
        if cfg.depformer is not None and cfg.depformer.num_slices > 0:
            self.depformer = DepFormer(cfg)
        else:
            self.depformer = None
        self.text_emb = ScaledEmbedding(cfg.text_in_vocab_size, dim)
        self.out_norm = make_norm(cfg.transformer)
        self.text_linear = nn.Linear(dim, cfg.text_out_vocab_size, bias=False)
        self.audio_embs = [
            ScaledEmbedding(cfg.audio_vocab_size, dim)
            for _ in range(cfg.audio_codebooks)
        ]
        # Auxiliary heads present in some checkpoints, not used for decoding.
        self.extra_heads = [
            nn.Linear(dim, cfg.extra_heads_dim, bias=False)
            for _ in range(cfg.extra_heads_num_heads)
        ]

        self.transformer_cache: list[KVCache] = self.transformer.make_cache()
        if self.depformer is not None:
            self.depformer_cache: list[KVCache] = self.depformer.slices[
                0
            ].transformer.make_cache()
        else:
            self.depformer_cache = []

    def reset_cache(self):
        for c in self.transformer_cache:
            c.reset()
        for c in self.depformer_cache:
            c.reset()

    def __call__(self, token_ids: mx.array) -> mx.array:
        """Text-only forward pass, returns the text logits ``[B, T, V]``."""
        xs = self.text_emb(token_ids)
        xs = self.transformer(xs, cache=self.transformer_cache)
        return self.text_linear(self.out_norm(xs))

    def _embed(self, text_ids: mx.array | None, audio_ids: list[mx.array]) -> mx.array:
        xs = None if text_ids is None else self.text_emb(text_ids)
        for token_ids, emb in zip(audio_ids, self.audio_embs):
            e = emb(token_ids)
            xs = e if xs is None else xs + e
        if xs is None:
            raise ValueError("step requires text or audio inputs")
        return xs

    def step_main(
        self,
        text_ids: mx.array | None,
        audio_ids: list[mx.array],
    ) -> tuple[mx.array, mx.array]:
        """
        Run the temporal transformer on one step of inputs.

        Args:
            text_ids: Previous text token [B, 1], or None
            audio_ids: One [B, 1] array per audio codebook

        Returns:
            Tuple of (normalized transformer output [B, 1, D], text logits [B, V])
        """
        xs = self._embed(text_ids, audio_ids)
        out = self.out_norm(self.transformer(xs, cache=self.transformer_cache))
        text_logits = self.text_linear(out[:, -1])
        return out, text_logits

    def sample(
        self,
        text_ids: mx.array | None,
        audio_ids: list[mx.array],
        step_idx: int,
        text_sampler: sampling.Sampler,
        audio_sampler: sampling.Sampler,
        cb: Callbacks | None = None,
    ) -> tuple[mx.array, mx.array | None]:
        """
        Full generation step: text token, then audio tokens if any.

        Both results are evaluated before returning.

        Returns:
            Tuple of (text token [B], audio tokens [B, dep_q] or None)
        """
        cb = cb or Callbacks()
        cb.on_event(EventKind.BEGIN_STEP)
        out, text_logits = self.step_main(text_ids, audio_ids)
        text_token, _ = text_sampler(text_logits)
        mx.eval(text_token)
        cb.on_event(EventKind.END_STEP)
        if self.depformer is None:
            return text_token, None
        cb.on_event(EventKind.BEGIN_DEPFORMER)
        audio_tokens = self.depformer.sample(
            out,
            step_idx=step_idx,
            sampler=audio_sampler,
            text_token=text_token,
            cache=self.depformer_cache,
        )
        mx.eval(audio_tokens)
        cb.on_event(EventKind.END_DEPFORMER)
        return text_token, audio_tokens

    def warmup(self):
        """
        Run one step on dummy inputs so that kernels get compiled, then reset.
        """
        sampler = sampling.Sampler(temp=0.0)
        text_ids = mx.array([[self.cfg.text_init_token]])
        audio_ids = [
            mx.array([[self.cfg.audio_padding_token]])
            for _ in range(self.cfg.audio_codebooks)
        ]
        text, audio = self.sample(
            text_ids,
            audio_ids,
            step_idx=0,
            text_sampler=sampler,
            audio_sampler=sampler,
        )
        mx.eval(text)
        if audio is not None:
            mx.eval(audio)
        self.reset_cache()


def _temporal_transformer(
    d_model: int, num_heads: int, num_layers: int, context: int, max_period: int
) -> TransformerConfig:
    return TransformerConfig(
        d_model=d_model,
        num_heads=num_heads,
        num_layers=num_layers,
        dim_feedforward=d_model * 4,
        causal=True,
        norm_first=True,
        bias_ff=False,
        bias_attn=False,
        layer_scale=None,
        context=context,
        max_period=max_period,
        use_conv_bias=True,
        gating=True,
        norm="rms_norm",
        positional_embedding="rope",
        conv_layout=False,
        kv_repeat=1,
        max_seq_len=4096,
    )


def _depformer(num_slices: int) -> DepFormerConfig:
    return DepFormerConfig(
        transformer=TransformerConfig(
            d_model=1024,
            num_heads=16,
            num_layers=6,
            dim_feedforward=1024 * 4,
            causal=True,
            norm_first=True,
            bias_ff=False,
            bias_attn=False,
            layer_scale=None,
            context=num_slices,
            max_period=10000,
            use_conv_bias=True,
            gating=True,
            norm="rms_norm",
            positional_embedding="none",
            conv_layout=False,
            kv_repeat=1,
            max_seq_len=4096,
        ),
        num_slices=num_slices,
    )


def _asr_config(transformer: TransformerConfig, text_card: int) -> LmConfig:
    return LmConfig(
        transformer=transformer,
        depformer=None,
        text_in_vocab_size=text_card + 1,
        text_out_vocab_size=text_card,
        audio_vocab_size=2049,
        audio_codebooks=32,
        audio_delays=[0] * 32,
    )


def config_asr_300m() -> LmConfig:
    """300M speech-to-text model: 16 layers of width 1024, 48k text vocabulary."""
    return _asr_config(_temporal_transformer(1024, 8, 16, 750, 100000), 48000)


def config_asr_1b() -> LmConfig:
    """
    1B speech-to-text model (``kyutai/stt-1b-en_fr``).

    16 layers of width 2048, a 3000 step context (4 minutes) and an 8000
    entry text vocabulary.
    """
    return _asr_config(_temporal_transformer(2048, 16, 16, 3000, 100000), 8000)


def config_asr_2b() -> LmConfig:
    """2.6B speech-to-text model: 24 layers of width 2560, 4k text vocabulary."""
    return _asr_config(_temporal_transformer(2560, 20, 24, 3000, 100000), 4000)


def config1b_202412() -> LmConfig:
    """
    1B Moshi model: 16 layers of width 2048, a depformer over 8 codebooks and
    acoustic codebooks delayed by 2 steps.
    """
    return LmConfig(
        transformer=_temporal_transformer(2048, 16, 16, 3000, 100000),
        depformer=_depformer(8),
        audio_vocab_size=2049,
        text_in_vocab_size=48001,
        text_out_vocab_size=48000,
        audio_codebooks=16,
        audio_delays=([0] + [2] * 7) * 2,
    )


def config_v0_1() -> LmConfig:
    """
    First released 7B Moshi model: 32 layers of width 4096, a 32k text vocabulary
    and acoustic codebooks delayed by 1 step.
    """
    return LmConfig(
        transformer=_temporal_transformer(4096, 32, 32, 3000, 10000),
        depformer=_depformer(8),
        audio_vocab_size=2049,
        text_in_vocab_size=32001,
        text_out_vocab_size=32000,
        audio_codebooks=16,
        audio_delays=([0] + [1] * 7) * 2,
    )
