"""HTTP boundary for the bridge: FastAPI app, run with uvicorn.

    python -m novelai_bridge.server
"""

import logging
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .capabilities import nai_samplers_for
from .config import Config
from .errors import BridgeError, RequestFailure
from .images import SourceImage
from .params import GenerationOptions
from .providers import UpscaleOptions
from .service import ImageRequestService

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "sanitation": 400,
    "validation": 400,
    "admission": 429,
    "transport": 502,
    "empty": 502,
}

app = FastAPI(title="NovelAI Bridge")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
config = Config()
service = ImageRequestService(config)


# ============================================
# API MODELS
# ============================================
class GenerateRequest(BaseModel):
    prompt: str = Field(default="", description="Free-text prompt, optionally with a trailing -u negative segment")
    scope: str = Field(default="default", description="Concurrency scope, e.g. a chat channel id")
    image: Optional[str] = Field(default=None, description="Source image as base64 or data URL")
    sampler: Optional[str] = None
    resolution: Optional[str] = Field(default=None, description="Orientation name or WIDTHxHEIGHT")
    steps: Optional[int] = None
    scale: Optional[float] = None
    seed: Optional[int] = None
    strength: Optional[float] = None
    noise: Optional[float] = None
    model: Optional[str] = None
    override: bool = Field(default=False, description="Skip base/negative/default prompt augmentation")
    enhance: bool = False
    authority: int = 0


class GenerateResponse(BaseModel):
    images: List[str] = Field(description="Base64-encoded images")
    seed: int
    sampler: str
    steps: int
    scale: float
    strength: Optional[float] = None
    noise: Optional[float] = None
    prompt: str
    negative_prompt: str
    queue_depth: int = 0
    parameters: Dict = Field(default_factory=dict)


class UpscaleRequest(BaseModel):
    image: str = Field(description="Source image as base64 or data URL")
    scope: str = "default"
    scale: float = 2
    resolution: Optional[str] = None
    upscaler: Optional[str] = None
    upscaler2: Optional[str] = None
    upscaler2_visibility: Optional[float] = None
    upscale_first: bool = False


def raise_failure(failure: RequestFailure):
    raise HTTPException(status_code=STATUS_BY_KIND.get(failure.kind, 500), detail=failure.to_dict())


def decode_image(value: Optional[str]) -> Optional[SourceImage]:
    if not value:
        return None
    try:
        return SourceImage.from_base64(value)
    except BridgeError as e:
        raise_failure(e.to_failure())


def log_notice(key: str, *params):
    logger.info(f"[Server] {key} {list(params) if params else ''}")


# ============================================
# API ENDPOINTS
# ============================================

@app.on_event("startup")
async def startup_event():
    logger.info("")
    logger.info("🚀 NovelAI Bridge starting...")
    service.config.print_config()


@app.get("/")
async def root():
    return {
        "service": "NovelAI Bridge",
        "version": "1.0.0",
        "status": "running",
        "backend": service.config.TYPE,
    }


@app.get("/status")
async def get_status():
    return {"status": "running", **service.status()}


@app.get("/sdapi/v1/samplers")
async def get_samplers():
    active = service.config
    table = dict(active.backend.samplers)
    if active.backend.paid:
        table = dict(nai_samplers_for(active.model))
    return [{"name": name, "aliases": [key]} for key, name in table.items()]


@app.post("/generate", response_model=GenerateResponse)
async def generate(request: GenerateRequest):
    logger.info("=" * 80)
    logger.info(f"📸 NEW GENERATION REQUEST scope={request.scope}")
    logger.info("=" * 80)

    image = decode_image(request.image)
    options = GenerationOptions(
        sampler=request.sampler,
        resolution=request.resolution,
        steps=request.steps,
        scale=request.scale,
        seed=request.seed,
        strength=request.strength,
        noise=request.noise,
        model=request.model,
        override=request.override,
        enhance=request.enhance,
        authority=request.authority,
    )
    result = await service.generate(request.prompt, options, request.scope, image, notify=log_notice)
    if isinstance(result, RequestFailure):
        raise_failure(result)

    return GenerateResponse(
        images=[result.image_base64],
        seed=result.seed,
        sampler=result.sampler,
        steps=result.steps,
        scale=result.scale,
        strength=result.strength,
        noise=result.noise,
        prompt=result.prompt,
        negative_prompt=result.negative_prompt,
        queue_depth=result.queue_depth,
        parameters=result.echo,
    )


@app.post("/upscale")
async def upscale(request: UpscaleRequest):
    image = decode_image(request.image)
    options = UpscaleOptions(
        scale=request.scale,
        resolution=request.resolution,
        upscaler=request.upscaler,
        upscaler2=request.upscaler2,
        upscaler2_visibility=request.upscaler2_visibility,
        upscale_first=request.upscale_first,
    )
    result = await service.upscale(image, options, request.scope, notify=log_notice)
    if isinstance(result, RequestFailure):
        raise_failure(result)
    return {"image": result.image_base64, "queue_depth": result.queue_depth, "parameters": result.echo}


# ============================================
# MAIN
# ============================================

if __name__ == "__main__":
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())
