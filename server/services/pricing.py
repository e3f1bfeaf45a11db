"""Pricing service for generation costs.

Provides cost calculation for:
- Image models (flat or resolution-tiered, per image)
- Video models (per second, with/without generated audio)
- Motion transfer models (flat, per run)
- LLM text generation (per token)
- Post-processing operations (flat or per-second per node type)

Pricing is loaded from config/pricing.json so the table can change without
code changes; every calculation here is a pure function of that table.
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from constants import (
    IMAGE_NODE_TYPES,
    LLM_NODE_TYPES,
    MOTION_NODE_TYPE,
    PROCESSING_NODE_TYPES,
    VIDEO_NODE_TYPES,
)
from core.logging import get_logger

logger = get_logger(__name__)

# Path to the bundled pricing configuration file
CONFIG_PATH = Path(__file__).parent.parent / "config" / "pricing.json"

DEFAULT_IMAGE_MODEL = "nano-banana"
DEFAULT_VIDEO_MODEL = "veo-3.1-fast"
DEFAULT_MOTION_MODEL = "kling-motion-control"
DEFAULT_LLM_MODEL = "llama"
DEFAULT_VIDEO_DURATION = 8
DEFAULT_IMAGE_RESOLUTION = "2K"


def normalize_resolution(resolution: Optional[str]) -> str:
    """Map free-form resolution strings onto the 1K/2K/4K pricing tiers."""
    if not resolution:
        return DEFAULT_IMAGE_RESOLUTION
    upper = str(resolution).upper()
    if "4K" in upper or "2160" in upper:
        return "4K"
    if "1K" in upper or "720" in upper:
        return "1K"
    return "2K"


class PricingService:
    """Cost functions over the pricing table."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load pricing config from JSON file."""
        if not self.config_path.exists():
            logger.warning("Pricing config not found, all costs are 0", path=str(self.config_path))
            self._config = {}
            return
        with open(self.config_path, "r", encoding="utf-8") as f:
            self._config = json.load(f)
        logger.info("Loaded pricing config", version=self._config.get("version", "unknown"),
                    path=str(self.config_path))

    def _section(self, name: str) -> Dict[str, Any]:
        return self._config.get(name, {})

    def _default(self, key: str, fallback: Any) -> Any:
        return self._section("defaults").get(key, fallback)

    # =========================================================================
    # Per-model prices
    # =========================================================================

    def is_image_model(self, model: str) -> bool:
        return model in self._section("image")

    def is_video_model(self, model: str) -> bool:
        return model in self._section("video")

    def is_motion_model(self, model: str) -> bool:
        return model in self._section("motion")

    def calculate_image_cost(self, model: str, resolution: Optional[str] = None) -> float:
        pricing = self._section("image").get(model)
        if pricing is None:
            return 0.0
        if isinstance(pricing, dict):
            tier = normalize_resolution(resolution)
            return float(pricing.get(tier, pricing.get(DEFAULT_IMAGE_RESOLUTION, 0.0)))
        return float(pricing)

    def calculate_video_cost(self, model: str, duration: float, with_audio: bool) -> float:
        pricing = self._section("video").get(model)
        if not isinstance(pricing, dict):
            return 0.0
        per_second = pricing["withAudio"] if with_audio else pricing["withoutAudio"]
        return round(per_second * duration, 6)

    def calculate_motion_cost(self, model: str) -> float:
        return float(self._section("motion").get(model, 0.0))

    def calculate_llm_cost(self, input_tokens: int, output_tokens: int,
                           model: str = DEFAULT_LLM_MODEL) -> float:
        llm = self._section("llm")
        per_token = llm.get(model, llm.get("_default", 0.0))
        return round((input_tokens + output_tokens) * per_token, 8)

    def calculate_processing_cost(self, node_type: str, input_type: Optional[str] = None,
                                  duration: Optional[float] = None) -> float:
        pricing = self._section("processing").get(node_type)
        if pricing is None:
            return 0.0
        if not isinstance(pricing, dict):
            return float(pricing)

        seconds = duration or self._default("processing_video_duration", 5)
        if "per_second" in pricing:
            return round(pricing["per_second"] * seconds, 6)
        if input_type == "video":
            if "video_per_second" in pricing:
                return round(pricing["video_per_second"] * seconds, 6)
            if "video_per_5s" in pricing:
                return round(pricing["video_per_5s"] * math.ceil(seconds / 5), 6)
        return float(pricing.get("image", 0.0))

    def calculate_prediction_cost(self, model: str, duration: Optional[float] = None,
                                  with_audio: Optional[bool] = None, resolution: Optional[str] = None,
                                  input_tokens: int = 0, output_tokens: int = 0) -> float:
        """Actual cost of one finished prediction, dispatched on the model family."""
        if self.is_image_model(model):
            return self.calculate_image_cost(model, resolution)
        if self.is_video_model(model):
            return self.calculate_video_cost(
                model,
                duration if duration is not None else self._default("video_duration", DEFAULT_VIDEO_DURATION),
                with_audio if with_audio is not None else self._default("video_with_audio", True),
            )
        if self.is_motion_model(model):
            return self.calculate_motion_cost(model)
        if model in self._section("llm") or input_tokens or output_tokens:
            return self.calculate_llm_cost(input_tokens, output_tokens, model)
        return 0.0

    # =========================================================================
    # Workflow estimates
    # =========================================================================

    def calculate_node_cost(self, node_type: str, data: Dict[str, Any]) -> float:
        """Estimated cost of one node before it runs; LLM usage is unknown up front."""
        if node_type in IMAGE_NODE_TYPES:
            return self.calculate_image_cost(data.get("model") or DEFAULT_IMAGE_MODEL, data.get("resolution"))
        if node_type == MOTION_NODE_TYPE:
            return self.calculate_motion_cost(data.get("model") or DEFAULT_MOTION_MODEL)
        if node_type in VIDEO_NODE_TYPES:
            return self.calculate_video_cost(
                data.get("model") or DEFAULT_VIDEO_MODEL,
                data.get("duration") or DEFAULT_VIDEO_DURATION,
                data.get("generateAudio", True),
            )
        if node_type in PROCESSING_NODE_TYPES:
            return self.calculate_processing_cost(node_type, data.get("inputType"), data.get("duration"))
        if node_type in LLM_NODE_TYPES:
            return 0.0
        return 0.0

    def estimate_workflow(self, nodes: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Total and per-node breakdown for every node with a non-zero estimate."""
        breakdown: List[Dict[str, Any]] = []
        total = 0.0
        for node in nodes:
            node_type = node.get("type", "")
            data = node.get("data") or {}
            cost = self.calculate_node_cost(node_type, data)
            if cost <= 0:
                continue
            item = {
                "nodeId": node["id"],
                "nodeType": node_type,
                "model": data.get("model") or self._default_model(node_type),
                "subtotal": cost,
            }
            if node_type in VIDEO_NODE_TYPES and node_type != MOTION_NODE_TYPE:
                item["duration"] = data.get("duration") or DEFAULT_VIDEO_DURATION
                item["withAudio"] = data.get("generateAudio", True)
            breakdown.append(item)
            total += cost
        return {"total": round(total, 6), "breakdown": breakdown}

    @staticmethod
    def _default_model(node_type: str) -> str:
        if node_type in IMAGE_NODE_TYPES:
            return DEFAULT_IMAGE_MODEL
        if node_type == MOTION_NODE_TYPE:
            return DEFAULT_MOTION_MODEL
        if node_type in VIDEO_NODE_TYPES:
            return DEFAULT_VIDEO_MODEL
        return "unknown"
