"""Generation provider capability registry.

Each provider id maps to one ProviderCapability descriptor exposing:
  normalize(parameters)  - validate and default the structured parameters
  cost(parameters)       - pure credit cost for one unit
  build_payload(...)     - the provider job request body
  extractor              - the ResultExtractor for callback/poll payloads

Image providers charge 20 credits per unit (25 at 4K). Video providers
charge per 5-second block by mode, plus a flat surcharge for sound.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from fanverse_studio.common.errors import InvalidRequestError
from fanverse_studio.providers.extraction import (
    GenericResultExtractor,
    KieJobExtractor,
    ResultExtractor,
)

IMAGE_ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "21:9")
IMAGE_RESOLUTIONS = ("1K", "2K", "4K")
VIDEO_ASPECT_RATIOS = ("16:9", "9:16", "1:1")
VIDEO_DURATIONS = (5, 10)
VIDEO_MODES = ("std", "pro")


def _coerce(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be a number.")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError(f"{name} must be a number.") from exc


@dataclass(frozen=True)
class ProviderCapability:
    """Base descriptor shared by image and video providers."""

    provider_id: str
    name: str
    description: str
    upstream_model: str
    extractor: ResultExtractor = field(default_factory=KieJobExtractor)

    media_kind: ClassVar[str] = ""
    allowed_parameters: ClassVar[tuple[str, ...]] = ()

    def normalize(self, parameters: dict[str, Any]) -> dict[str, Any]:
        """Validate parameters and fill in defaults.

        Raises:
            InvalidRequestError: On an unsupported key or out-of-range value.
        """
        unknown = sorted(set(parameters) - set(self.allowed_parameters))
        if unknown:
            raise InvalidRequestError(
                f"Parameters not supported by {self.provider_id}: {', '.join(unknown)}."
            )
        return self._normalize(dict(parameters))

    def _normalize(self, parameters: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def cost(self, parameters: dict[str, Any]) -> int:
        raise NotImplementedError

    def build_input(self, prompt: str, parameters: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def build_payload(
        self,
        prompt: str,
        system_prompt: str | None,
        parameters: dict[str, Any],
        reference_media: list[str],
        callback_url: str,
    ) -> dict[str, Any]:
        """Build the job request body sent to the provider."""
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        input_payload = self.build_input(full_prompt, parameters)
        if reference_media:
            input_payload["reference_images"] = list(reference_media)
        return {
            "model": self.upstream_model,
            "callBackUrl": callback_url,
            "input": input_payload,
        }


@dataclass(frozen=True)
class ImageCapability(ProviderCapability):
    """Still-image provider: aspect ratio, resolution, and sampling knobs."""

    media_kind: ClassVar[str] = "image"
    allowed_parameters: ClassVar[tuple[str, ...]] = ("aspect_ratio", "resolution", "temperature", "top_p", "top_k")
    base_cost: int = 20
    high_resolution_cost: int = 25

    def _normalize(self, parameters: dict[str, Any]) -> dict[str, Any]:
        aspect_ratio = parameters.get("aspect_ratio") or "1:1"
        resolution = parameters.get("resolution") or "1K"
        if aspect_ratio not in IMAGE_ASPECT_RATIOS:
            raise InvalidRequestError(f"Unsupported aspect ratio: {aspect_ratio}.")
        if resolution not in IMAGE_RESOLUTIONS:
            raise InvalidRequestError(f"Unsupported resolution: {resolution}.")

        normalized: dict[str, Any] = {"aspect_ratio": aspect_ratio, "resolution": resolution}
        temperature = parameters.get("temperature")
        if temperature is not None:
            temperature = _coerce("temperature", temperature, float)
            if not 0.0 <= temperature <= 2.0:
                raise InvalidRequestError("temperature must be between 0 and 2.")
            normalized["temperature"] = temperature
        top_p = parameters.get("top_p")
        if top_p is not None:
            top_p = _coerce("top_p", top_p, float)
            if not 0.0 <= top_p <= 1.0:
                raise InvalidRequestError("top_p must be between 0 and 1.")
            normalized["top_p"] = top_p
        top_k = parameters.get("top_k")
        if top_k is not None:
            top_k = _coerce("top_k", top_k, int)
            if top_k < 1:
                raise InvalidRequestError("top_k must be at least 1.")
            normalized["top_k"] = top_k
        return normalized

    def cost(self, parameters: dict[str, Any]) -> int:
        return self.high_resolution_cost if parameters.get("resolution") == "4K" else self.base_cost

    def build_input(self, prompt: str, parameters: dict[str, Any]) -> dict[str, Any]:
        input_payload: dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": parameters["aspect_ratio"],
            "resolution": parameters["resolution"],
            "output_format": "png",
        }
        for key in ("temperature", "top_p", "top_k"):
            if parameters.get(key) is not None:
                input_payload[key] = parameters[key]
        return input_payload


@dataclass(frozen=True)
class VideoCapability(ProviderCapability):
    """Video provider: duration, quality mode, and optional sound."""

    media_kind: ClassVar[str] = "video"
    allowed_parameters: ClassVar[tuple[str, ...]] = ("aspect_ratio", "duration", "mode", "sound")
    cost_per_block: tuple[tuple[str, int], ...] = (("std", 30), ("pro", 50))
    block_seconds: int = 5
    sound_surcharge: int = 10

    def _normalize(self, parameters: dict[str, Any]) -> dict[str, Any]:
        aspect_ratio = parameters.get("aspect_ratio") or "16:9"
        duration = _coerce("duration", parameters.get("duration") or VIDEO_DURATIONS[0], int)
        mode = parameters.get("mode") or "std"
        sound = parameters.get("sound", False)
        if sound is None:
            sound = False
        if not isinstance(sound, bool):
            raise InvalidRequestError("sound must be true or false.")
        if aspect_ratio not in VIDEO_ASPECT_RATIOS:
            raise InvalidRequestError(f"Unsupported aspect ratio: {aspect_ratio}.")
        if duration not in VIDEO_DURATIONS:
            raise InvalidRequestError(f"Unsupported duration: {duration}s.")
        if mode not in VIDEO_MODES:
            raise InvalidRequestError(f"Unsupported mode: {mode}.")
        return {"aspect_ratio": aspect_ratio, "duration": duration, "mode": mode, "sound": sound}

    def cost(self, parameters: dict[str, Any]) -> int:
        per_block = dict(self.cost_per_block)[parameters["mode"]]
        blocks = parameters["duration"] // self.block_seconds
        return per_block * blocks + (self.sound_surcharge if parameters["sound"] else 0)

    def build_input(self, prompt: str, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "aspect_ratio": parameters["aspect_ratio"],
            "duration": str(parameters["duration"]),
            "mode": parameters["mode"],
            "sound": parameters["sound"],
        }


PROVIDERS: dict[str, ProviderCapability] = {
    capability.provider_id: capability
    for capability in (
        ImageCapability(
            provider_id="nano-banana-pro",
            name="Nano Banana Pro",
            description="Fast and efficient model for quick creative generation.",
            upstream_model="nano-banana-pro",
        ),
        ImageCapability(
            provider_id="grok-imagine",
            name="Grok Imagine",
            description="Creative model for imaginative visual content.",
            upstream_model="grok-imagine",
        ),
        ImageCapability(
            provider_id="seedream",
            name="Seedream",
            description="Dream-like artistic generation with unique aesthetic styles.",
            upstream_model="seedream",
        ),
        VideoCapability(
            provider_id="kling",
            name="Kling",
            description="Cinematic video generation.",
            upstream_model="kling",
        ),
    )
}


def get_capability(provider_id: str) -> ProviderCapability:
    """Look up a provider descriptor.

    Raises:
        InvalidRequestError: If the provider id is unknown.
    """
    capability = PROVIDERS.get(provider_id)
    if capability is None:
        raise InvalidRequestError(f"Unknown model: {provider_id}.")
    return capability


def is_valid_provider(provider_id: str) -> bool:
    return provider_id in PROVIDERS


__all__ = [
    "GenericResultExtractor",
    "ImageCapability",
    "PROVIDERS",
    "ProviderCapability",
    "VideoCapability",
    "get_capability",
    "is_valid_provider",
]
