"""
Generation Options

Caller-owned configuration for a generation run, seed progression policy
and aspect-ratio resolution helpers.
"""

import copy
import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .errors import InvalidOptionsError

MAX_SEED = 2**32 - 1

ASPECT_RATIO_PRESETS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9")

BASE_SIZE_SD15 = 512
BASE_SIZE_DEFAULT = 1024


def parse_aspect_ratio(aspect_ratio: str) -> Tuple[int, int]:
    try:
        w, h = (int(part) for part in aspect_ratio.split(":"))
    except ValueError:
        raise InvalidOptionsError(f"Invalid aspect ratio '{aspect_ratio}', expected 'w:h'")
    if w <= 0 or h <= 0:
        raise InvalidOptionsError(f"Invalid aspect ratio '{aspect_ratio}', sides must be positive")
    return w, h


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def compute_resolution(aspect_ratio: str, base: int) -> Tuple[int, int]:
    """
    Width and height for `aspect_ratio` with the long edge pinned to `base`.

    The short edge is rounded to the nearest multiple of 8, which the latent
    encoders require.

    Example:
        compute_resolution("3:4", 1024) -> (768, 1024)
    """
    w, h = parse_aspect_ratio(aspect_ratio)
    aspect = w / h
    if aspect >= 1:
        return base, _round_half_up(base / aspect / 8) * 8
    return _round_half_up(base * aspect / 8) * 8, base


def orientation_resolution(aspect_ratio: str, landscape: Tuple[int, int], portrait: Tuple[int, int]) -> Tuple[int, int]:
    """Fixed size by orientation only; square counts as portrait."""
    w, h = parse_aspect_ratio(aspect_ratio)
    return tuple(landscape) if w > h else tuple(portrait)


class SeedPolicy(str, Enum):
    FIXED = "fixed"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    RANDOMIZE = "randomize"


@dataclass
class SeedState:
    current: int
    policy: SeedPolicy = SeedPolicy.RANDOMIZE
    step: int = 1
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    @classmethod
    def start(cls, seed: Optional[int], policy: Union[str, SeedPolicy], step: int = 1, rng: Optional[random.Random] = None) -> "SeedState":
        rng = rng or random.Random()
        if seed is None:
            seed = rng.randint(0, MAX_SEED)
        return cls(seed % (MAX_SEED + 1), SeedPolicy(policy), step, rng)

    def advance(self) -> int:
        """Move to the next seed per policy. Called once per batch iteration, after stamping."""
        if self.policy == SeedPolicy.INCREMENT:
            self.current = (self.current + self.step) % (MAX_SEED + 1)
        elif self.policy == SeedPolicy.DECREMENT:
            self.current = (self.current - self.step) % (MAX_SEED + 1)
        elif self.policy == SeedPolicy.RANDOMIZE:
            previous = self.current
            while self.current == previous:
                self.current = self.rng.randint(0, MAX_SEED)
        return self.current


@dataclass
class LoraOption:
    """Settings for one LoRA stage. `*_low` apply to the second node of a high/low pair."""

    enabled: bool = True
    name: Optional[str] = None
    strength: Optional[float] = None
    name_low: Optional[str] = None
    strength_low: Optional[float] = None

    def for_node(self, index: int) -> Tuple[Optional[str], Optional[float]]:
        if index == 0:
            return self.name, self.strength
        return (
            self.name_low if self.name_low is not None else self.name,
            self.strength_low if self.strength_low is not None else self.strength,
        )


@dataclass
class GenerationOptions:
    """
    Flat configuration for a generation run.

    Fields left as None keep whatever the template already carries. The
    orchestrator snapshots the instance at the start of a batch and never
    mutates it.
    """

    model_family: str = "sdxl"
    provider: str = "comfyui"
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None

    # Sampler
    steps: Optional[int] = None
    cfg: Optional[float] = None
    sampler: Optional[str] = None
    scheduler: Optional[str] = None
    guidance: Optional[float] = None
    refiner_start_step: Optional[int] = None

    # Size and count
    aspect_ratio: str = "3:4"
    num_images: int = 4

    # Seed
    seed: Optional[int] = None
    seed_policy: SeedPolicy = SeedPolicy.RANDOMIZE
    seed_step: int = 1

    # Model files keyed by the template's model slot names
    models: Dict[str, str] = field(default_factory=dict)
    loras: Dict[str, LoraOption] = field(default_factory=dict)

    # Nunchaku loaders
    cache_threshold: Optional[float] = None
    cpu_offload: Optional[str] = None
    attention: Optional[str] = None
    base_shift: Optional[float] = None
    max_shift: Optional[float] = None

    # Upscaler
    use_upscaler: Optional[bool] = None
    upscale_steps: Optional[int] = None
    upscale_denoise: Optional[float] = None

    # Video
    frame_count: Optional[int] = None
    video_width: Optional[int] = None
    video_height: Optional[int] = None
    frame_rate: Optional[float] = None
    video_format: Optional[str] = None
    use_film_grain: Optional[bool] = None
    film_grain_intensity: Optional[float] = None
    film_grain_saturation: Optional[float] = None
    use_end_frame: bool = False
    end_frame_strength: Optional[float] = None

    # Local files keyed by template image input name
    input_images: Dict[str, str] = field(default_factory=dict)
    # {{PLACEHOLDER}} overrides
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def end_frame_weight(self) -> Optional[float]:
        if not self.use_end_frame:
            return 0.0
        return self.end_frame_strength

    def snapshot(self) -> "GenerationOptions":
        return copy.deepcopy(self)

    def seed_state(self, rng: Optional[random.Random] = None) -> SeedState:
        return SeedState.start(self.seed, self.seed_policy, self.seed_step, rng)

    def validate(self) -> None:
        """Raise InvalidOptionsError for values no template could use."""
        if self.provider != "comfyui":
            raise InvalidOptionsError(
                f"Provider '{self.provider}' is not handled by the ComfyUI orchestrator",
                details={"provider": self.provider},
            )
        if self.num_images < 1:
            raise InvalidOptionsError("num_images must be at least 1", details={"num_images": self.num_images})
        parse_aspect_ratio(self.aspect_ratio)
        try:
            SeedPolicy(self.seed_policy)
        except ValueError:
            raise InvalidOptionsError(
                f"Unknown seed policy '{self.seed_policy}'",
                details={"allowed": [p.value for p in SeedPolicy]},
            )
        if self.steps is not None and self.steps < 1:
            raise InvalidOptionsError("steps must be at least 1", details={"steps": self.steps})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationOptions":
        """Build from plain JSON (tool and CLI input). Unknown keys are rejected."""
        data = dict(data)
        loras = {name: LoraOption(**value) for name, value in (data.pop("loras", None) or {}).items()}
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidOptionsError(f"Unknown option(s): {', '.join(unknown)}", details={"unknown": unknown})
        if "seed_policy" in data:
            try:
                data["seed_policy"] = SeedPolicy(data["seed_policy"])
            except ValueError:
                raise InvalidOptionsError(
                    f"Unknown seed policy '{data['seed_policy']}'",
                    details={"allowed": [p.value for p in SeedPolicy]},
                )
        return cls(loras=loras, **data)
