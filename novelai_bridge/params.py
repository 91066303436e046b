"""Parameter resolution: option bag + config -> ResolvedParameters."""

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from .capabilities import MODEL_MAP, ORIENT_MAP, nai_samplers_for
from .errors import ValidationError
from .images import SourceImage, closest_multiple, resize_input

logger = logging.getLogger(__name__)

_RESOLUTION = re.compile(r"^(\d+)[x×](\d+)$")

ENHANCE_CALIBRATION = 1280
ENHANCE_FACTOR = 1.5


@dataclass
class GenerationOptions:
    """Option values already parsed by the chat integration."""
    sampler: Optional[str] = None
    resolution: Optional[str] = None
    steps: Optional[Union[int, str]] = None
    scale: Optional[float] = None
    seed: Optional[int] = None
    strength: Optional[float] = None
    noise: Optional[float] = None
    model: Optional[str] = None
    override: bool = False
    enhance: bool = False
    authority: int = 0


@dataclass(frozen=True)
class ResolvedParameters:
    seed: int
    width: int
    height: int
    steps: int
    scale: float
    sampler_key: str
    model: Optional[str] = None
    scheduler: Optional[str] = None
    strength: Optional[float] = None
    noise: Optional[float] = None
    source_image: Optional[SourceImage] = field(default=None, repr=False)

    def echo(self) -> Dict:
        data = {
            "seed": self.seed,
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "scale": self.scale,
            "sampler": self.sampler_key,
            "model": self.model,
            "scheduler": self.scheduler,
        }
        if self.source_image is not None:
            data["strength"] = self.strength
            data["noise"] = self.noise
        return data


def is_restricted(config, authority: int = 0) -> bool:
    """Whether the caller may not spend paid-backend credit on extras."""
    if config.third_party:
        return False
    allow = config.ALLOW_ANLAS
    if isinstance(allow, bool):
        return not allow
    return authority < allow


def parse_resolution(source: Union[str, Dict[str, int]], config, restricted: bool = False) -> Dict[str, int]:
    if isinstance(source, dict):
        return {"width": int(source["width"]), "height": int(source["height"])}
    source = str(source).strip()
    if source in ORIENT_MAP:
        return dict(ORIENT_MAP[source])
    if restricted:
        raise ValidationError(".invalid-resolution")
    cap = _RESOLUTION.match(source)
    if not cap:
        raise ValidationError(".invalid-resolution")
    return fit_resolution(int(cap.group(1)), int(cap.group(2)), config)


def fit_resolution(width: float, height: float, config) -> Dict[str, int]:
    """Round both sides to the backend multiple and enforce MAX_RESOLUTION."""
    multiple = config.backend.multiple
    width = closest_multiple(width, multiple)
    height = closest_multiple(height, multiple)
    if config.MAX_RESOLUTION and max(width, height) > config.MAX_RESOLUTION:
        raise ValidationError(".invalid-resolution")
    return {"width": width, "height": height}


def parse_steps(source: Union[int, str], config) -> int:
    if isinstance(source, bool):
        raise ValidationError(".invalid-steps")
    try:
        value = float(source)
    except (TypeError, ValueError):
        raise ValidationError(".invalid-steps") from None
    if value != int(value) or value <= 0:
        raise ValidationError(".invalid-steps")
    if config.MAX_STEPS and value > config.MAX_STEPS:
        raise ValidationError(".invalid-steps")
    return int(value)


def _unit(value: Optional[float], key: str) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    if not 0 <= value <= 1:
        raise ValidationError(key)
    return value


def resolve_model(options: GenerationOptions, config) -> Optional[str]:
    if config.backend.paid:
        return options.model if options.model in MODEL_MAP else config.model
    return config.MODEL


def resolve_sampler(requested: Optional[str], config, model: Optional[str] = None) -> str:
    backend = config.backend
    table = dict(backend.samplers)
    if backend.paid or backend.kind == "naifu":
        table.update(nai_samplers_for(model))
    for candidate in (requested, config.SAMPLER, backend.default_sampler):
        if candidate and candidate in table:
            return candidate
    return backend.default_sampler


def resolve_scheduler(config) -> Optional[str]:
    backend = config.backend
    scheduler = config.scheduler
    if backend.schedulers and scheduler not in backend.schedulers:
        return backend.default_scheduler
    return scheduler


def resolve_parameters(
    options: GenerationOptions,
    config,
    image: Optional[SourceImage] = None,
) -> ResolvedParameters:
    """Fill backend defaults and validate options.

    Raises ValidationError for anything the caller must fix; nothing here is
    retried.
    """
    restricted = is_restricted(config, options.authority)
    steps = options.steps
    enhance = options.enhance
    if restricted:
        image, steps, enhance = None, None, False

    if steps is not None:
        steps = parse_steps(steps, config)

    resolution = None
    if options.resolution:
        resolution = parse_resolution(options.resolution, config, restricted)

    strength = _unit(options.strength, ".invalid-strength")
    noise = _unit(options.noise, ".invalid-noise")

    if enhance:
        if image is None:
            raise ValidationError(".expect-image")
        size = image.size
        if size["width"] + size["height"] != ENHANCE_CALIBRATION:
            raise ValidationError(".invalid-size")
        resolution = fit_resolution(size["width"] * ENHANCE_FACTOR, size["height"] * ENHANCE_FACTOR, config)
        noise = 0.0 if noise is None else noise
        strength = 0.2 if strength is None else strength
    elif image is not None:
        resolution = resolution or resize_input(image.size, config.backend.multiple)
        noise = config.NOISE if noise is None else noise
        strength = config.STRENGTH if strength is None else strength
    else:
        resolution = resolution or parse_resolution(config.RESOLUTION, config)
        noise = strength = None

    if image is not None and steps is None:
        steps = config.IMAGE_STEPS
    elif steps is None:
        steps = config.TEXT_STEPS
    if config.MAX_STEPS:
        steps = min(steps, config.MAX_STEPS)

    seed = options.seed
    if seed is None:
        seed = random.randint(0, 2 ** 32 - 1)
    elif not 0 <= int(seed) < 2 ** 32:
        raise ValidationError(".invalid-seed")

    model = resolve_model(options, config)
    return ResolvedParameters(
        seed=int(seed),
        width=resolution["width"],
        height=resolution["height"],
        steps=steps,
        scale=float(config.SCALE if options.scale is None else options.scale),
        sampler_key=resolve_sampler(options.sampler, config, model),
        model=model,
        scheduler=resolve_scheduler(config),
        strength=strength,
        noise=noise,
        source_image=image,
    )
