"""Node handler table: per node type parameter mapping, polling and cost.

Adding a provider-backed node type means adding one ``NODE_HANDLERS`` entry.
Every handler receives the node's own data plus the outputs of its upstream
nodes, collected by :func:`collect_inputs`.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from services.poller import (
    POLL_IMAGE,
    POLL_LLM,
    POLL_PROCESSING_IMAGE,
    POLL_PROCESSING_VIDEO,
    POLL_VIDEO,
)
from services.pricing import (
    DEFAULT_IMAGE_MODEL,
    DEFAULT_IMAGE_RESOLUTION,
    DEFAULT_LLM_MODEL,
    DEFAULT_MOTION_MODEL,
    DEFAULT_VIDEO_DURATION,
    DEFAULT_VIDEO_MODEL,
    PricingService,
)

FAMILY_IMAGE = "image"
FAMILY_VIDEO = "video"
FAMILY_LLM = "llm"
FAMILY_PROCESSING = "processing"

DEFAULT_MAX_TOKENS = 1024
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass
class NodeInputs:
    """Values produced by upstream nodes, grouped by media kind."""
    texts: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)
    audios: List[str] = field(default_factory=list)

    def first(self, kind: str) -> Optional[str]:
        values = getattr(self, kind)
        return values[0] if values else None


def collect_inputs(outputs: Iterable[Optional[Dict[str, Any]]]) -> NodeInputs:
    inputs = NodeInputs()
    for output in outputs:
        if not isinstance(output, dict):
            continue
        for key in ("text", "prompt"):
            if isinstance(output.get(key), str):
                inputs.texts.append(output[key])
        if isinstance(output.get("value"), str):
            inputs.texts.append(output["value"])
        for key, target in (("image", inputs.images), ("video", inputs.videos), ("audio", inputs.audios)):
            value = output.get(key)
            if isinstance(value, str):
                target.append(value)
            elif isinstance(value, list):
                target.extend(v for v in value if isinstance(v, str))
    return inputs


def shape_output(kind: str, raw: Any) -> Dict[str, Any]:
    """Normalize a provider output into ``{kind: value}``."""
    if kind == "text":
        if isinstance(raw, list):
            return {"text": "".join(str(part) for part in raw)}
        if isinstance(raw, dict):
            return {"text": str(raw.get("text") or raw.get("output") or "")}
        return {"text": "" if raw is None else str(raw)}

    if isinstance(raw, list):
        return {kind: raw[0] if raw else None}
    if isinstance(raw, dict):
        if kind in raw:
            return {kind: raw[kind]}
        if "output" in raw:
            return {kind: raw["output"]}
        return dict(raw)
    return {kind: raw}


def _set_if(params: Dict[str, Any], key: str, value: Any) -> None:
    if value is not None and value != "":
        params[key] = value


def _prompt(data: Dict[str, Any], inputs: NodeInputs) -> Optional[str]:
    return data.get("prompt") or inputs.first("texts")


def _input_type(data: Dict[str, Any], inputs: NodeInputs) -> str:
    if data.get("inputType"):
        return data["inputType"]
    return "video" if inputs.videos and not inputs.images else "image"


def with_input_type(data: Dict[str, Any], inputs: NodeInputs) -> Dict[str, Any]:
    """Copy of ``data`` with ``inputType`` filled in from the upstream media."""
    return {**data, "inputType": _input_type(data, inputs)}


RequestBuilder = Callable[[Dict[str, Any], NodeInputs], Tuple[str, Dict[str, Any]]]
CostFunction = Callable[[PricingService, str, Dict[str, Any], Dict[str, Any]], float]


@dataclass(frozen=True)
class NodeHandler:
    family: str
    build_request: RequestBuilder
    poll_config: Callable[[Dict[str, Any]], str]
    output_kind: Callable[[Dict[str, Any]], str]
    cost: CostFunction


# =============================================================================
# Image / video / LLM
# =============================================================================

def _image_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    model = data.get("model") or DEFAULT_IMAGE_MODEL
    params: Dict[str, Any] = {
        "prompt": _prompt(data, inputs) or "",
        "resolution": data.get("resolution") or DEFAULT_IMAGE_RESOLUTION,
        "output_format": data.get("outputFormat") or "jpg",
    }
    images = data.get("inputImages") or inputs.images
    if images:
        params["image_input"] = list(images)
    _set_if(params, "aspect_ratio", data.get("aspectRatio"))
    return model, params


def _image_cost(pricing: PricingService, node_type: str, data: Dict[str, Any],
                metrics: Dict[str, Any]) -> float:
    return pricing.calculate_prediction_cost(data.get("model") or DEFAULT_IMAGE_MODEL,
                                             resolution=data.get("resolution"))


def _video_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    model = data.get("model") or DEFAULT_VIDEO_MODEL
    params: Dict[str, Any] = {
        "prompt": _prompt(data, inputs) or "",
        "duration": data.get("duration") or DEFAULT_VIDEO_DURATION,
        "generate_audio": data.get("generateAudio", True),
    }
    _set_if(params, "image", data.get("image") or inputs.first("images"))
    _set_if(params, "last_frame", data.get("lastFrame"))
    _set_if(params, "aspect_ratio", data.get("aspectRatio"))
    _set_if(params, "resolution", data.get("resolution"))
    _set_if(params, "negative_prompt", data.get("negativePrompt"))
    _set_if(params, "seed", data.get("seed"))
    return model, params


def _motion_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params: Dict[str, Any] = {"prompt": _prompt(data, inputs) or ""}
    _set_if(params, "image", data.get("image") or inputs.first("images"))
    _set_if(params, "video", data.get("video") or inputs.first("videos"))
    _set_if(params, "mode", data.get("mode"))
    return data.get("model") or DEFAULT_MOTION_MODEL, params


def _video_cost(pricing: PricingService, node_type: str, data: Dict[str, Any],
                metrics: Dict[str, Any]) -> float:
    return pricing.calculate_prediction_cost(
        data.get("model") or DEFAULT_VIDEO_MODEL,
        duration=data.get("duration") or DEFAULT_VIDEO_DURATION,
        with_audio=data.get("generateAudio", True),
    )


def _motion_cost(pricing: PricingService, node_type: str, data: Dict[str, Any],
                 metrics: Dict[str, Any]) -> float:
    return pricing.calculate_prediction_cost(data.get("model") or DEFAULT_MOTION_MODEL)


def _llm_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params = {
        "prompt": _prompt(data, inputs) or "",
        "system_prompt": data.get("systemPrompt") or DEFAULT_SYSTEM_PROMPT,
        "max_tokens": data.get("maxTokens") or DEFAULT_MAX_TOKENS,
        "temperature": data.get("temperature", 0.7),
        "top_p": data.get("topP", 0.9),
    }
    return data.get("model") or DEFAULT_LLM_MODEL, params


def _llm_cost(pricing: PricingService, node_type: str, data: Dict[str, Any],
              metrics: Dict[str, Any]) -> float:
    return pricing.calculate_prediction_cost(
        data.get("model") or DEFAULT_LLM_MODEL,
        input_tokens=metrics.get("inputTokens") or 0,
        output_tokens=metrics.get("outputTokens") or 0,
    )


# =============================================================================
# Processing
# =============================================================================

def _reframe_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    grid = data.get("gridPosition") or {}
    params: Dict[str, Any] = {
        "aspect_ratio": data.get("aspectRatio") or "16:9",
        "grid_position_x": grid.get("x", 0.5),
        "grid_position_y": grid.get("y", 0.5),
    }
    _set_if(params, "prompt", data.get("prompt"))
    if _input_type(data, inputs) == "video":
        params["video"] = data.get("video") or inputs.first("videos")
        return "reframe-video", params
    params["image"] = data.get("image") or inputs.first("images")
    return "reframe-image", params


def _upscale_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    if _input_type(data, inputs) == "video":
        return "upscale-video", {
            "video": data.get("video") or inputs.first("videos"),
            "target_resolution": data.get("targetResolution") or "1080p",
            "target_fps": data.get("targetFps") or 30,
        }
    return "upscale-image", {
        "image": data.get("image") or inputs.first("images"),
        "enhance_model": data.get("enhanceModel") or "Standard V2",
        "upscale_factor": data.get("upscaleFactor") or "2x",
        "output_format": data.get("outputFormat") or "png",
        "face_enhancement": data.get("faceEnhancement", False),
    }


def _lip_sync_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params: Dict[str, Any] = {"audio": data.get("audio") or inputs.first("audios")}
    video = data.get("video") or inputs.first("videos")
    if video:
        params["video"] = video
    else:
        _set_if(params, "image", data.get("image") or inputs.first("images"))
    _set_if(params, "sync_mode", data.get("syncMode"))
    return data.get("model") or "lipsync-2", params


def _voice_change_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params: Dict[str, Any] = {"source_audio": data.get("audio") or inputs.first("audios")}
    _set_if(params, "target_audio", data.get("targetVoice"))
    return data.get("model") or "voice-change", params


def _tts_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params: Dict[str, Any] = {"text": data.get("text") or inputs.first("texts") or ""}
    _set_if(params, "voice_id", data.get("voice"))
    _set_if(params, "speed", data.get("speed"))
    return data.get("model") or "text-to-speech", params


def _frame_extract_request(data: Dict[str, Any], inputs: NodeInputs) -> Tuple[str, Dict[str, Any]]:
    params = {
        "video": data.get("video") or inputs.first("videos"),
        "fps": data.get("fps") or 1,
    }
    return data.get("model") or "frame-extract", params


def _processing_cost(pricing: PricingService, node_type: str, data: Dict[str, Any],
                     metrics: Dict[str, Any]) -> float:
    return pricing.calculate_processing_cost(node_type, data.get("inputType"), data.get("duration"))


def _by_input_type(video: str, image: str) -> Callable[[Dict[str, Any]], str]:
    return lambda data: video if data.get("inputType") == "video" else image


def _fixed(value: str) -> Callable[[Dict[str, Any]], str]:
    return lambda data: value


NODE_HANDLERS: Dict[str, NodeHandler] = {
    "imageGen": NodeHandler(FAMILY_IMAGE, _image_request, _fixed(POLL_IMAGE), _fixed("image"), _image_cost),
    "videoGen": NodeHandler(FAMILY_VIDEO, _video_request, _fixed(POLL_VIDEO), _fixed("video"), _video_cost),
    "motionControl": NodeHandler(FAMILY_VIDEO, _motion_request, _fixed(POLL_VIDEO), _fixed("video"), _motion_cost),
    "llm": NodeHandler(FAMILY_LLM, _llm_request, _fixed(POLL_LLM), _fixed("text"), _llm_cost),
    "reframe": NodeHandler(
        FAMILY_PROCESSING, _reframe_request,
        _by_input_type(POLL_PROCESSING_VIDEO, POLL_PROCESSING_IMAGE),
        _by_input_type("video", "image"), _processing_cost,
    ),
    "upscale": NodeHandler(
        FAMILY_PROCESSING, _upscale_request,
        _by_input_type(POLL_PROCESSING_VIDEO, POLL_PROCESSING_IMAGE),
        _by_input_type("video", "image"), _processing_cost,
    ),
    "lipSync": NodeHandler(FAMILY_PROCESSING, _lip_sync_request, _fixed(POLL_PROCESSING_VIDEO),
                           _fixed("video"), _processing_cost),
    "voiceChange": NodeHandler(FAMILY_PROCESSING, _voice_change_request, _fixed(POLL_PROCESSING_IMAGE),
                               _fixed("audio"), _processing_cost),
    "textToSpeech": NodeHandler(FAMILY_PROCESSING, _tts_request, _fixed(POLL_PROCESSING_IMAGE),
                                _fixed("audio"), _processing_cost),
    "videoFrameExtract": NodeHandler(FAMILY_PROCESSING, _frame_extract_request,
                                     _fixed(POLL_PROCESSING_VIDEO), _fixed("image"), _processing_cost),
}


def get_node_handler(node_type: str) -> NodeHandler:
    try:
        return NODE_HANDLERS[node_type]
    except KeyError:
        raise ValueError(f"No handler registered for node type: {node_type}") from None
