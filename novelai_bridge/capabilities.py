"""Static capability tables for every supported backend.

Read-only after import. Sampler tables map the caller-facing sampler key to
the display name the backend documents; the key is what goes on the wire for
NovelAI, Stable Horde and ComfyUI, the name for sd-webui.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

MODEL_MAP = {
    "safe": "safe-diffusion",
    "nai": "nai-diffusion",
    "furry": "nai-diffusion-furry",
    "nai-v3": "nai-diffusion-3",
    "nai-v4-curated-preview": "nai-diffusion-4-curated-preview",
}

ORIENT_MAP = {
    "landscape": {"width": 1216, "height": 832},
    "portrait": {"width": 832, "height": 1216},
    "square": {"width": 1024, "height": 1024},
}

UC_PRESET = ", ".join([
    "nsfw, lowres, {bad}, error, fewer, extra, missing, worst quality",
    "jpeg artifacts, bad quality, watermark, unfinished, displeasing",
    "chromatic aberration, signature, extra digits, artistic error, username, scan, [abstract]",
])

DEFAULT_BASE_PROMPT = "best quality, amazing quality, very aesthetic, absurdres"

# NovelAI
NAI_SAMPLERS = {
    "k_euler_a": "Euler ancestral",
    "k_euler": "Euler",
    "k_lms": "LMS",
    "ddim": "DDIM",
    "plms": "PLMS",
}

NAI3_SAMPLERS = {
    "k_euler": "Euler",
    "k_euler_a": "Euler ancestral",
    "k_dpmpp_2s_ancestral": "DPM++ 2S ancestral",
    "k_dpmpp_2m": "DPM++ 2M",
    "k_dpmpp_sde": "DPM++ SDE",
    "ddim_v3": "DDIM V3",
}

NAI4_SAMPLERS = {
    "k_euler": "Euler",
    "k_euler_a": "Euler ancestral",
    "k_dpmpp_2s_ancestral": "DPM++ 2S ancestral",
    "k_dpmpp_2m_sde": "DPM++ 2M SDE",
    "k_dpmpp_2m": "DPM++ 2M",
    "k_dpmpp_sde": "DPM++ SDE",
}

# stable-diffusion-webui, keyed by the k-diffusion style alias
SD_SAMPLERS = {
    "k_euler_a": "Euler a",
    "k_euler": "Euler",
    "k_lms": "LMS",
    "k_heun": "Heun",
    "k_dpm_2": "DPM2",
    "k_dpm_2_a": "DPM2 a",
    "k_dpmpp_2s_a": "DPM++ 2S a",
    "k_dpmpp_2m": "DPM++ 2M",
    "k_dpmpp_sde": "DPM++ SDE",
    "k_dpmpp_2m_sde": "DPM++ 2M SDE",
    "k_dpm_fast": "DPM fast",
    "k_dpm_ad": "DPM adaptive",
    "k_lms_ka": "LMS Karras",
    "k_dpm_2_ka": "DPM2 Karras",
    "k_dpm_2_a_ka": "DPM2 a Karras",
    "k_dpmpp_2s_a_ka": "DPM++ 2S a Karras",
    "k_dpmpp_2m_ka": "DPM++ 2M Karras",
    "k_dpmpp_sde_ka": "DPM++ SDE Karras",
    "ddim": "DDIM",
    "plms": "PLMS",
    "unipc": "UniPC",
}

HORDE_SAMPLERS = {
    "k_lms": "LMS",
    "k_heun": "Heun",
    "k_euler": "Euler",
    "k_euler_a": "Euler a",
    "k_dpm_2": "DPM2",
    "k_dpm_2_a": "DPM2 a",
    "k_dpm_fast": "DPM fast",
    "k_dpm_adaptive": "DPM adaptive",
    "k_dpmpp_2m": "DPM++ 2M",
    "k_dpmpp_2s_a": "DPM++ 2S a",
    "k_dpmpp_sde": "DPM++ SDE",
    "dpmsolver": "DPM solver",
    "lcm": "LCM",
    "DDIM": "DDIM",
}

COMFYUI_SAMPLERS = {
    "euler": "Euler",
    "euler_ancestral": "Euler ancestral",
    "heun": "Heun",
    "heunpp2": "Heun++ 2",
    "dpm_2": "DPM 2",
    "dpm_2_ancestral": "DPM 2 ancestral",
    "lms": "LMS",
    "dpm_fast": "DPM fast",
    "dpm_adaptive": "DPM adaptive",
    "dpmpp_2s_ancestral": "DPM++ 2S ancestral",
    "dpmpp_sde": "DPM++ SDE",
    "dpmpp_sde_gpu": "DPM++ SDE GPU",
    "dpmpp_2m": "DPM++ 2M",
    "dpmpp_2m_sde": "DPM++ 2M SDE",
    "dpmpp_2m_sde_gpu": "DPM++ 2M SDE GPU",
    "dpmpp_3m_sde": "DPM++ 3M SDE",
    "dpmpp_3m_sde_gpu": "DPM++ 3M SDE GPU",
    "ddpm": "DDPM",
    "lcm": "LCM",
    "ddim": "DDIM",
    "uni_pc": "UniPC",
    "uni_pc_bh2": "UniPC BH2",
}

NAI_SCHEDULERS = ("native", "karras", "exponential", "polyexponential")
NAI4_SCHEDULERS = ("karras", "exponential", "polyexponential")
SD_SCHEDULERS = ("Automatic", "Uniform", "Karras", "Exponential", "Polyexponential", "SGM Uniform")
HORDE_SCHEDULERS = ("karras",)
COMFYUI_SCHEDULERS = ("normal", "karras", "exponential", "sgm_uniform", "simple", "ddim_uniform")

UPSCALERS = (
    "None",
    "Lanczos",
    "Nearest",
    # third-party, may be missing on the server
    "LDSR",
    "ESRGAN_4x",
    "R-ESRGAN General 4xV3",
    "R-ESRGAN General WDN 4xV3",
    "R-ESRGAN AnimeVideo",
    "R-ESRGAN 4x+",
    "R-ESRGAN 4x+ Anime6B",
    "R-ESRGAN 2x+",
    "ScuNET GAN",
    "ScuNET PSNR",
    "SwinIR 4x",
)

LATENT_UPSCALERS = (
    "Latent",
    "Latent (antialiased)",
    "Latent (bicubic)",
    "Latent (bicubic antialiased)",
    "Latent (nearest)",
    "Latent (nearest-exact)",
)


@dataclass(frozen=True)
class BackendProfile:
    kind: str
    paid: bool
    samplers: Dict[str, str]
    default_sampler: str
    schedulers: Tuple[str, ...] = ()
    default_scheduler: Optional[str] = None
    default_endpoint: Optional[str] = None
    multiple: int = 64


BACKENDS: Dict[str, BackendProfile] = {
    "token": BackendProfile(
        kind="token", paid=True, samplers=NAI3_SAMPLERS, default_sampler="k_euler_a",
        schedulers=NAI_SCHEDULERS, default_scheduler="native",
        default_endpoint="https://image.novelai.net",
    ),
    "login": BackendProfile(
        kind="login", paid=True, samplers=NAI3_SAMPLERS, default_sampler="k_euler_a",
        schedulers=NAI_SCHEDULERS, default_scheduler="native",
        default_endpoint="https://image.novelai.net",
    ),
    "naifu": BackendProfile(
        kind="naifu", paid=False, samplers=NAI_SAMPLERS, default_sampler="k_euler_a",
    ),
    "sd-webui": BackendProfile(
        kind="sd-webui", paid=False, samplers=SD_SAMPLERS, default_sampler="k_euler_a",
        schedulers=SD_SCHEDULERS, default_scheduler="Automatic",
    ),
    "stable-horde": BackendProfile(
        kind="stable-horde", paid=False, samplers=HORDE_SAMPLERS, default_sampler="k_euler_a",
        schedulers=HORDE_SCHEDULERS, default_scheduler="karras",
        default_endpoint="https://stablehorde.net",
    ),
    "comfyui": BackendProfile(
        kind="comfyui", paid=False, samplers=COMFYUI_SAMPLERS, default_sampler="euler",
        schedulers=COMFYUI_SCHEDULERS, default_scheduler="normal",
    ),
}


def get_backend(kind: str) -> BackendProfile:
    try:
        return BACKENDS[kind]
    except KeyError:
        raise ValueError(f"Unknown backend type: {kind}") from None


def nai_samplers_for(model: Optional[str]) -> Dict[str, str]:
    if model == "nai-v3":
        return NAI3_SAMPLERS
    if model and model.startswith("nai-v4"):
        return NAI4_SAMPLERS
    return NAI_SAMPLERS


def sd2nai(sampler: Optional[str], model: Optional[str]) -> str:
    """Canonicalize a sampler key for the NovelAI wire format.

    NovelAI spells the ancestral Euler sampler out in full; unknown samplers
    for the active model version fall back to it.
    """
    if sampler == "k_euler_a":
        return "k_euler_ancestral"
    if sampler and sampler in nai_samplers_for(model):
        return sampler
    if sampler in NAI_SAMPLERS:
        return sampler
    return "k_euler_ancestral"
