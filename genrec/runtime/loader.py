"""
ModelLoader: resolve a model path into device-resident weights.

Accepted layouts:
- a directory holding an optional config.json and one weight file
- a single weight file

Weight formats are .safetensors (safetensors) and .bin/.pth/.pt
(torch.load with weights_only=True). A generative-recommendation model is
two required tensors plus an optional bias:

    item_embedding.weight   [num_items, hidden_size]
    ranking_head.weight     [hidden_size, hidden_size]
    ranking_head.bias       [hidden_size]             (optional)

Loading goes host first, then one copy per device context. Every byte
placed on a device is charged to that context's memory pool, so a failed
transfer can be rolled back exactly.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import torch
from safetensors.torch import load_file, save_file

from genrec.errors import DeviceInitError, InvalidModelPathError, ModelLoadError
from genrec.runtime.devices import DeviceContext

logger = logging.getLogger(__name__)

ARCHITECTURE = "GenerativeRecommender"
CONFIG_FILE = "config.json"
WEIGHT_SUFFIXES = (".safetensors", ".bin", ".pth", ".pt")
PREFERRED_WEIGHT_FILES = ("model.safetensors", "pytorch_model.bin", "model.pth", "model.pt")

EMBEDDING_KEY = "item_embedding.weight"
HEAD_WEIGHT_KEY = "ranking_head.weight"
HEAD_BIAS_KEY = "ranking_head.bias"

WEIGHTS_TAG = "weights"
WORKSPACE_TAG = "workspace"
# Activations held per batch slot, in units of hidden_size elements
WORKSPACE_ELEMENTS_PER_SLOT = 4

_DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


@dataclass
class ModelConfig:
    architecture: str = ARCHITECTURE
    model_id: Optional[str] = None
    num_items: Optional[int] = None
    hidden_size: Optional[int] = None
    max_batch_size: Optional[int] = None
    attention_decay: float = 0.9

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelConfig":
        """
        Raises:
            ValueError: If a field has the wrong type
        """
        for name in ("architecture", "model_id"):
            value = data.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string, got {value!r}")
        for name in ("num_items", "hidden_size", "max_batch_size"):
            value = data.get(name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValueError(f"{name} must be an integer, got {value!r}")
        decay = data.get("attention_decay", 0.9)
        if isinstance(decay, bool) or not isinstance(decay, (int, float)):
            raise ValueError(f"attention_decay must be a number, got {decay!r}")

        return cls(
            architecture=data.get("architecture", ARCHITECTURE),
            model_id=data.get("model_id"),
            num_items=data.get("num_items"),
            hidden_size=data.get("hidden_size"),
            max_batch_size=data.get("max_batch_size"),
            attention_decay=float(decay),
        )


@dataclass
class ResolvedModel:
    weights_file: Path
    config_file: Optional[Path] = None


@dataclass
class DeviceWeights:
    context: DeviceContext
    item_embedding: torch.Tensor
    ranking_head: torch.Tensor
    ranking_bias: Optional[torch.Tensor] = None
    nbytes: int = 0


@dataclass
class ModelBinding:
    """
    Weights plus the device contexts they live on, for one (path, devices) pair.

    Owned by exactly one handle; release() returns every charged byte and
    drops the device tensors.
    """
    model_id: str
    model_path: str
    config: ModelConfig
    dtype: torch.dtype
    device_weights: List[DeviceWeights] = field(default_factory=list)
    released: bool = False

    @property
    def num_items(self) -> int:
        return int(self.config.num_items)

    @property
    def hidden_size(self) -> int:
        return int(self.config.hidden_size)

    @property
    def primary(self) -> DeviceWeights:
        return self.device_weights[0]

    @property
    def nbytes(self) -> int:
        return sum(w.nbytes for w in self.device_weights)

    def release(self) -> int:
        """Free device memory held by this binding. Idempotent."""
        if self.released:
            return 0
        freed = 0
        for weights in self.device_weights:
            pool = weights.context.memory_pool
            freed += pool.free(WEIGHTS_TAG) + pool.free(WORKSPACE_TAG)
        self.device_weights = []
        self.released = True
        logger.info(f"Released model binding {self.model_id} ({freed / 1024**2:.1f}MB)")
        return freed


def resolve_model_path(model_path: Optional[str]) -> ResolvedModel:
    """
    Find the weight file (and config) a model path refers to.

    Raises:
        InvalidModelPathError: Missing path, unsupported format, or no weights
    """
    if not model_path:
        raise InvalidModelPathError(str(model_path), "model path is empty")

    path = Path(model_path)
    if not path.exists():
        raise InvalidModelPathError(model_path, "path does not exist")

    if path.is_file():
        if path.suffix.lower() not in WEIGHT_SUFFIXES:
            raise InvalidModelPathError(
                model_path, f"unsupported weight format {path.suffix!r} (expected {WEIGHT_SUFFIXES})"
            )
        config_file = path.parent / CONFIG_FILE
        return ResolvedModel(path, config_file if config_file.is_file() else None)

    for name in PREFERRED_WEIGHT_FILES:
        if (path / name).is_file():
            weights_file = path / name
            break
    else:
        candidates = sorted(
            p for p in path.iterdir()
            if p.is_file() and p.suffix.lower() in WEIGHT_SUFFIXES
        )
        if not candidates:
            raise InvalidModelPathError(model_path, "directory contains no weight file")
        weights_file = candidates[0]

    config_file = path / CONFIG_FILE
    return ResolvedModel(weights_file, config_file if config_file.is_file() else None)


class ModelLoader:
    """
    Loads generative-recommendation weights and binds them to device contexts.
    """

    def __init__(self):
        self.stats = {
            "models_loaded": 0,
            "load_failures": 0,
            "bytes_transferred": 0,
        }

    def load(
        self,
        model_path: str,
        contexts: List[DeviceContext],
        dtype: str = "float32",
        max_batch_size: int = 1,
    ) -> ModelBinding:
        """
        Load weights from disk and copy them to every context.

        Args:
            model_path: Directory or weight file
            contexts: Acquired device contexts (primary first)
            dtype: Name of the device dtype
            max_batch_size: Batch slots to reserve workspace for on each device

        Returns:
            ModelBinding bound to `contexts`

        Raises:
            InvalidModelPathError: Path cannot be resolved
            ModelLoadError: Unreadable weights, missing tensors, bad shapes,
                            architecture mismatch, corrupt embedding table
            DeviceInitError: A device cannot hold the weights or workspace
        """
        resolved = resolve_model_path(model_path)
        try:
            config = self._read_config(model_path, resolved)
            host_weights = self._read_weights(model_path, resolved.weights_file)
            config = self._validate(model_path, config, host_weights, max_batch_size)
            if config.model_id is None:
                config.model_id = self._default_model_id(resolved)
            binding = self._bind(model_path, config, host_weights, contexts, dtype, max_batch_size)
        except Exception:
            self.stats["load_failures"] += 1
            raise

        self.stats["models_loaded"] += 1
        logger.info(
            f"✅ Loaded model {binding.model_id} from {resolved.weights_file} "
            f"(items={binding.num_items}, hidden={binding.hidden_size}, "
            f"devices={[w.context.descriptor.name for w in binding.device_weights]})"
        )
        return binding

    def get_stats(self) -> Dict:
        return dict(self.stats)

    def _default_model_id(self, resolved: ResolvedModel) -> str:
        if resolved.weights_file.stem in ("model", "pytorch_model"):
            return resolved.weights_file.parent.name
        return resolved.weights_file.stem

    def _read_config(self, model_path: str, resolved: ResolvedModel) -> ModelConfig:
        if resolved.config_file is None:
            return ModelConfig()
        try:
            with open(resolved.config_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ModelLoadError(model_path, f"unreadable {CONFIG_FILE}: {e}") from e
        if not isinstance(data, dict):
            raise ModelLoadError(model_path, f"{CONFIG_FILE} must contain an object")
        try:
            return ModelConfig.from_dict(data)
        except ValueError as e:
            raise ModelLoadError(model_path, f"invalid {CONFIG_FILE}: {e}") from e

    def _read_weights(self, model_path: str, weights_file: Path) -> Dict[str, torch.Tensor]:
        try:
            if weights_file.suffix.lower() == ".safetensors":
                state = load_file(str(weights_file), device="cpu")
            else:
                state = torch.load(str(weights_file), map_location="cpu", weights_only=True)
        except Exception as e:
            raise ModelLoadError(model_path, f"unreadable weight file {weights_file.name}: {e}") from e

        if not isinstance(state, dict) or not all(
            isinstance(v, torch.Tensor) for v in state.values()
        ):
            raise ModelLoadError(model_path, "weight file is not a flat tensor state dict")
        return state

    def _validate(
        self,
        model_path: str,
        config: ModelConfig,
        weights: Dict[str, torch.Tensor],
        max_batch_size: int,
    ) -> ModelConfig:
        if config.architecture != ARCHITECTURE:
            raise ModelLoadError(
                model_path,
                f"architecture mismatch (expected {ARCHITECTURE}, got {config.architecture})",
            )

        missing = [k for k in (EMBEDDING_KEY, HEAD_WEIGHT_KEY) if k not in weights]
        if missing:
            raise ModelLoadError(model_path, f"missing ranking head tensors: {missing}")

        embedding = weights[EMBEDDING_KEY]
        head = weights[HEAD_WEIGHT_KEY]
        if embedding.dim() != 2 or embedding.shape[0] < 1 or embedding.shape[1] < 1:
            raise ModelLoadError(model_path, f"item embedding must be 2-D, got {tuple(embedding.shape)}")

        num_items, hidden = int(embedding.shape[0]), int(embedding.shape[1])
        if config.num_items is not None and config.num_items != num_items:
            raise ModelLoadError(
                model_path, f"config num_items={config.num_items} but embedding has {num_items} rows"
            )
        if config.hidden_size is not None and config.hidden_size != hidden:
            raise ModelLoadError(
                model_path, f"config hidden_size={config.hidden_size} but embedding has width {hidden}"
            )
        if tuple(head.shape) != (hidden, hidden):
            raise ModelLoadError(
                model_path, f"ranking head shape {tuple(head.shape)} incompatible with hidden size {hidden}"
            )
        bias = weights.get(HEAD_BIAS_KEY)
        if bias is not None and tuple(bias.shape) != (hidden,):
            raise ModelLoadError(model_path, f"ranking head bias shape {tuple(bias.shape)} != ({hidden},)")

        if not torch.isfinite(embedding).all():
            raise ModelLoadError(model_path, "embedding table corruption (non-finite values)")

        if config.max_batch_size is not None and max_batch_size > config.max_batch_size:
            raise ModelLoadError(
                model_path,
                f"model supports max_batch_size={config.max_batch_size}, "
                f"configured device batch size is {max_batch_size}",
            )
        if not 0.0 <= config.attention_decay < 1.0 or math.isnan(config.attention_decay):
            raise ModelLoadError(model_path, f"attention_decay must be in [0, 1), got {config.attention_decay}")

        config.num_items = num_items
        config.hidden_size = hidden
        return config

    def _bind(
        self,
        model_path: str,
        config: ModelConfig,
        weights: Dict[str, torch.Tensor],
        contexts: List[DeviceContext],
        dtype_name: str,
        max_batch_size: int,
    ) -> ModelBinding:
        if not contexts:
            raise DeviceInitError("none", "no device contexts to bind weights to")
        dtype = _DTYPES.get(dtype_name)
        if dtype is None:
            raise ModelLoadError(model_path, f"unsupported dtype {dtype_name!r}")

        binding = ModelBinding(
            model_id=config.model_id,
            model_path=str(model_path),
            config=config,
            dtype=dtype,
        )
        try:
            for context in contexts:
                binding.device_weights.append(
                    self._transfer(config, weights, context, dtype, max_batch_size)
                )
        except Exception:
            # Partial transfer: return what earlier contexts were charged
            for context in contexts:
                context.memory_pool.free(WEIGHTS_TAG)
                context.memory_pool.free(WORKSPACE_TAG)
            binding.device_weights = []
            binding.released = True
            raise
        return binding

    def _transfer(
        self,
        config: ModelConfig,
        weights: Dict[str, torch.Tensor],
        context: DeviceContext,
        dtype: torch.dtype,
        max_batch_size: int,
    ) -> DeviceWeights:
        tensors = [weights[EMBEDDING_KEY], weights[HEAD_WEIGHT_KEY]]
        bias = weights.get(HEAD_BIAS_KEY)
        if bias is not None:
            tensors.append(bias)

        element_size = torch.empty((), dtype=dtype).element_size()
        nbytes = sum(t.numel() for t in tensors) * element_size
        workspace = max_batch_size * int(config.hidden_size) * WORKSPACE_ELEMENTS_PER_SLOT * element_size

        pool = context.memory_pool
        pool.allocate(WEIGHTS_TAG, nbytes)
        try:
            pool.allocate(WORKSPACE_TAG, workspace)
        except DeviceInitError as e:
            pool.free(WEIGHTS_TAG)
            raise DeviceInitError(
                context.descriptor.name,
                f"insufficient memory for max_batch_size={max_batch_size}: {e.reason}",
            ) from e

        try:
            device_tensors = [t.to(device=context.device, dtype=dtype) for t in tensors]
        except RuntimeError as e:
            raise DeviceInitError(context.descriptor.name, f"weight transfer failed: {e}") from e

        self.stats["bytes_transferred"] += nbytes
        logger.debug(f"Transferred {nbytes / 1024**2:.2f}MB of weights to {context.descriptor.name}")
        return DeviceWeights(
            context=context,
            item_embedding=device_tensors[0],
            ranking_head=device_tensors[1],
            ranking_bias=device_tensors[2] if bias is not None else None,
            nbytes=nbytes,
        )


def write_model(
    path: str,
    item_embedding: torch.Tensor,
    ranking_head: torch.Tensor,
    ranking_bias: Optional[torch.Tensor] = None,
    fmt: str = "safetensors",
    **config: Any,
) -> Path:
    """
    Write a model directory in the layout ModelLoader reads.

    Args:
        path: Target directory (created if needed)
        item_embedding: [num_items, hidden_size]
        ranking_head: [hidden_size, hidden_size]
        ranking_bias: Optional [hidden_size]
        fmt: "safetensors", "bin" or "pth"
        **config: Extra config.json entries (model_id, max_batch_size, ...)

    Returns:
        Path of the written weight file
    """
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)

    state = {
        EMBEDDING_KEY: item_embedding.contiguous(),
        HEAD_WEIGHT_KEY: ranking_head.contiguous(),
    }
    if ranking_bias is not None:
        state[HEAD_BIAS_KEY] = ranking_bias.contiguous()

    if fmt == "safetensors":
        weights_file = target / "model.safetensors"
        save_file(state, str(weights_file))
    elif fmt == "bin":
        weights_file = target / "pytorch_model.bin"
        torch.save(state, str(weights_file))
    elif fmt == "pth":
        weights_file = target / "model.pth"
        torch.save(state, str(weights_file))
    else:
        raise ValueError(f"unsupported format {fmt!r}")

    config_data = {
        "architecture": ARCHITECTURE,
        "num_items": int(item_embedding.shape[0]),
        "hidden_size": int(item_embedding.shape[1]),
        **config,
    }
    with open(target / CONFIG_FILE, "w") as f:
        json.dump(config_data, f, indent=2)
    return weights_file
