"""Backend adapters.

One ``ProviderClient`` subclass per backend kind. Each builds the wire request
from resolved parameters and a canonical prompt, submits it, and turns the
response into a bare base64 image. ``create_client`` picks the adapter once
per configuration load.
"""

import asyncio
import base64
import copy
import hashlib
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx

from .capabilities import LATENT_UPSCALERS, MODEL_MAP, NAI4_SCHEDULERS, SD_SAMPLERS, UPSCALERS, sd2nai
from .errors import EmptyResponse, TransportFailure, ValidationError
from .images import SourceImage, strip_data_prefix
from .params import ResolvedParameters
from .prompt import CanonicalPrompt, count_words

logger = logging.getLogger(__name__)

# NovelAI streams "event: newImage\nid: 1\ndata:" before the image payload
NAI_STREAM_PREFIX = 27

WORKFLOW_DIR = os.path.join(os.path.dirname(__file__), "workflows")


@dataclass(frozen=True)
class JobPending:
    """Non-error state reported between polls of an asynchronous backend."""
    job_id: str
    queue_position: Optional[int] = None
    wait_time: Optional[int] = None


@dataclass
class BackendRequest:
    path: str
    payload: Dict
    params: Optional[ResolvedParameters] = None
    prompt: Optional[CanonicalPrompt] = None
    action: str = "generate"
    echo: Dict = field(default_factory=dict)


@dataclass
class BackendResult:
    image_base64: str
    echo: Dict = field(default_factory=dict)


@dataclass
class UpscaleOptions:
    scale: float = 2
    resolution: Optional[Dict[str, int]] = None
    upscaler: Optional[str] = None
    upscaler2: Optional[str] = None
    upscaler2_visibility: Optional[float] = None
    upscale_first: bool = False


PendingCallback = Callable[[JobPending], None]


class ProviderClient:
    """Base adapter: POST a JSON body, read the image out of the response."""
    name = "Backend"

    def __init__(self, config):
        self.config = config
        self.endpoint = config.endpoint
        logger.info(f"🌐 [{self.name}] Client initialized - Endpoint: {self.endpoint}")

    def build_request(self, params: ResolvedParameters, prompt: CanonicalPrompt) -> BackendRequest:
        raise NotImplementedError

    def build_upscale_request(self, image: SourceImage, options: UpscaleOptions) -> BackendRequest:
        raise ValidationError(".upscale-unavailable")

    def url(self, path: str) -> str:
        return f"{self.endpoint}{path}"

    def headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = dict(self.config.HEADERS)
        if token:
            headers["authorization"] = f"Bearer {token}"
        return headers

    async def submit(self, http: httpx.AsyncClient, request: BackendRequest, token: Optional[str]) -> httpx.Response:
        response = await http.post(self.url(request.path), json=request.payload, headers=self.headers(token))
        response.raise_for_status()
        return response

    async def parse_response(
        self,
        response: httpx.Response,
        request: BackendRequest,
        http: httpx.AsyncClient,
        token: Optional[str],
        task_id: str,
        on_pending: Optional[PendingCallback],
    ) -> str:
        raise NotImplementedError

    async def generate(
        self,
        request: BackendRequest,
        token: Optional[str] = None,
        task_id: str = "",
        on_pending: Optional[PendingCallback] = None,
    ) -> BackendResult:
        """One attempt against the backend. Raises httpx errors unclassified."""
        logger.info(f"🌐 [{self.name} {task_id}] {request.action} -> {request.path}")
        if request.params is not None:
            p = request.params
            logger.info(f"🌐 [{self.name} {task_id}] seed={p.seed}, steps={p.steps}, scale={p.scale}, size={p.width}x{p.height}, sampler={p.sampler_key}")

        async with httpx.AsyncClient(timeout=self.config.REQUEST_TIMEOUT) as http:
            response = await self.submit(http, request, token)
            logger.info(f"🌐 [{self.name} {task_id}] Response status: {response.status_code}")
            image = await self.parse_response(response, request, http, token, task_id, on_pending)

        if not image or not image.strip():
            logger.error(f"❌ [{self.name} {task_id}] Response carried no image")
            raise EmptyResponse()
        logger.info(f"✅ [{self.name} {task_id}] Image received ({len(image)} base64 chars)")
        return BackendResult(image_base64=image.strip(), echo=dict(request.echo))

    async def poll(self, check, task_id: str, on_pending: Optional[PendingCallback] = None):
        """Call `check` every POLL_INTERVAL until it returns something other
        than JobPending. Exceeding POLL_TIMEOUT counts as a request timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.POLL_TIMEOUT
        polls = 0
        while True:
            state = await check()
            if not isinstance(state, JobPending):
                return state
            polls += 1
            if on_pending is not None:
                on_pending(state)
            if polls % 10 == 1:
                logger.info(f"🌐 [{self.name} {task_id}] Job {state.job_id} still pending (queue={state.queue_position}, wait={state.wait_time})")
            if loop.time() >= deadline:
                logger.error(f"❌ [{self.name} {task_id}] Polling timed out after {self.config.POLL_TIMEOUT}s")
                raise TransportFailure(".request-timeout")
            await asyncio.sleep(self.config.POLL_INTERVAL)


def _nai_parameters(params: ResolvedParameters, prompt: CanonicalPrompt, model: Optional[str]) -> Dict:
    parameters = {
        "seed": params.seed,
        "n_samples": 1,
        "uc": prompt.negative_prompt,
        # 0: low quality + bad anatomy, 1: low quality, 2: none
        "ucPreset": 2,
        "qualityToggle": False,
        "scale": params.scale,
        "steps": params.steps,
        "width": params.width,
        "height": params.height,
        "sampler": sd2nai(params.sampler_key, model),
    }
    image = params.source_image
    if image is not None:
        # bare base64, not a data URL
        parameters.update(
            image=image.base64,
            strength=params.strength,
            noise=params.noise,
            extra_noise_seed=params.seed,
        )
    return parameters


class NovelAIClient(ProviderClient):
    """NovelAI image API, reached with a token or a login access token."""
    name = "NovelAI"

    def build_request(self, params, prompt):
        model = params.model or self.config.model
        parameters = _nai_parameters(params, prompt, model)
        config = self.config
        if model == "nai-v3":
            parameters.update(
                params_version=1,
                legacy=False,
                sm=config.SMEA,
                sm_dyn=config.SMEA_DYN,
                noise_schedule=params.scheduler,
                dynamic_thresholding=config.DECRISPER,
            )
        elif model and model.startswith("nai-v4"):
            # nai-v4 has no native schedule
            schedule = params.scheduler if params.scheduler in NAI4_SCHEDULERS else "karras"
            parameters.update(
                params_version=3,
                noise_schedule=schedule,
                cfg_rescale=config.RESCALE,
                dynamic_thresholding=config.DECRISPER,
                v4_prompt={
                    "caption": {"base_caption": prompt.prompt, "char_captions": []},
                    "use_coords": False,
                    "use_order": True,
                },
                v4_negative_prompt={
                    "caption": {"base_caption": prompt.negative_prompt, "char_captions": []},
                },
            )
        action = "img2img" if params.source_image is not None else "generate"
        payload = {
            "model": MODEL_MAP.get(model, model),
            "input": prompt.prompt,
            "action": action,
            "parameters": parameters,
        }
        return BackendRequest("/ai/generate-image", payload, params, prompt, action=action, echo=params.echo())

    async def parse_response(self, response, request, http, token, task_id, on_pending):
        return response.text[NAI_STREAM_PREFIX:].strip()


class NaifuClient(NovelAIClient):
    """Self-hosted NAIFU: NovelAI parameters, flattened, no model wrapper."""
    name = "NAIFU"

    def build_request(self, params, prompt):
        parameters = _nai_parameters(params, prompt, params.model)
        parameters["prompt"] = prompt.prompt
        action = "img2img" if params.source_image is not None else "generate"
        return BackendRequest("/generate-stream", parameters, params, prompt, action=action, echo=params.echo())


def project(source: Dict, mapping: Dict[str, str]) -> Dict:
    """Rename `source` keys per `mapping` (target -> source), dropping None."""
    result = {}
    for target, key in mapping.items():
        value = source.get(key)
        if value is not None:
            result[target] = value
    return result


SD_FIELD_MAP = {
    "prompt": "prompt",
    "batch_size": "n_samples",
    "seed": "seed",
    "negative_prompt": "uc",
    "cfg_scale": "scale",
    "steps": "steps",
    "width": "width",
    "height": "height",
    "denoising_strength": "strength",
}


class SDWebUIClient(ProviderClient):
    """AUTOMATIC1111 stable-diffusion-webui API."""
    name = "SD-WebUI"

    def __init__(self, config):
        super().__init__(config)
        if config.HIRES_FIX_UPSCALER not in LATENT_UPSCALERS + UPSCALERS:
            raise ValueError(f"Unknown HIRES_FIX_UPSCALER: {config.HIRES_FIX_UPSCALER}")

    def dantaggen_args(self) -> List:
        c = self.config
        return [
            True,
            c.DTG_DISABLE_AFTER_LEN,
            c.DTG_TAG_LENGTH,
            c.DTG_BAN_TAGS,
            c.DTG_PROMPT_FORMAT,
            c.DTG_SEED,
            c.DTG_TIMING,
            c.DTG_MODEL,
            c.DTG_USE_CPU,
            c.DTG_NO_FORMATTING,
            c.DTG_TEMPERATURE,
            c.DTG_TOP_P,
            c.DTG_TOP_K,
        ]

    def build_request(self, params, prompt):
        config = self.config
        image = params.source_image
        source = {
            "prompt": prompt.prompt,
            "n_samples": 1,
            "seed": params.seed,
            "uc": prompt.negative_prompt,
            "scale": params.scale,
            "steps": params.steps,
            "width": params.width,
            "height": params.height,
            "strength": params.strength if image is not None else None,
        }
        payload = {
            "sampler_index": SD_SAMPLERS.get(params.sampler_key, params.sampler_key),
            **project(source, SD_FIELD_MAP),
        }
        if params.scheduler:
            payload["scheduler"] = params.scheduler
        if config.RESTORE_FACES:
            payload["restore_faces"] = True
        if image is not None:
            # sd-webui wants data URLs
            payload["init_images"] = [image.data_url]
        elif config.HIRES_FIX:
            payload["enable_hr"] = True
            payload["hr_upscaler"] = config.HIRES_FIX_UPSCALER
        if config.DTG_ENABLED and count_words(prompt.positive_tags) <= config.DTG_DISABLE_AFTER_LEN:
            payload["alwayson_scripts"] = {"DanTagGen": {"args": self.dantaggen_args()}}

        path = "/sdapi/v1/img2img" if image is not None else "/sdapi/v1/txt2img"
        action = "img2img" if image is not None else "generate"
        return BackendRequest(path, payload, params, prompt, action=action, echo=params.echo())

    def build_upscale_request(self, image, options):
        upscaler = options.upscaler or self.config.UPSCALER
        if upscaler not in UPSCALERS or (options.upscaler2 and options.upscaler2 not in UPSCALERS):
            raise ValidationError(".invalid-upscaler")
        resolution = options.resolution or {}
        payload = {
            "image": image.data_url,
            "resize_mode": 1 if resolution else 0,
            "show_extras_results": True,
            "upscaling_resize": options.scale,
            "upscaler_1": upscaler,
            "upscaler_2": options.upscaler2 or "None",
            "extras_upscaler_2_visibility": 1 if options.upscaler2_visibility is None else options.upscaler2_visibility,
            "upscale_first": options.upscale_first,
        }
        if resolution:
            payload["upscaling_resize_w"] = resolution["width"]
            payload["upscaling_resize_h"] = resolution["height"]
        echo = {"scale": options.scale, "upscaler": upscaler, **resolution}
        return BackendRequest("/sdapi/v1/extra-single-image", payload, action="upscale", echo=echo)

    async def parse_response(self, response, request, http, token, task_id, on_pending):
        data = response.json()
        if request.action == "upscale":
            return strip_data_prefix(data.get("image") or "")
        images = data.get("images") or []
        return strip_data_prefix(images[0]) if images else ""


class StableHordeClient(ProviderClient):
    """Stable Horde: asynchronous submit, then poll until a worker finishes."""
    name = "Horde"
    ANONYMOUS_KEY = "0000000000"
    CLIENT_AGENT = "novelai-bridge:1.0:https://github.com/novelai-bridge"

    def headers(self, token=None):
        headers = dict(self.config.HEADERS)
        headers["apikey"] = token or self.ANONYMOUS_KEY
        headers["Client-Agent"] = self.CLIENT_AGENT
        return headers

    def build_request(self, params, prompt):
        config = self.config
        image = params.source_image
        horde_params = {
            "sampler_name": params.sampler_key,
            "cfg_scale": params.scale,
            "seed": str(params.seed),
            "width": params.width,
            "height": params.height,
            "post_processing": [],
            "karras": params.scheduler == "karras",
            "hires_fix": config.HIRES_FIX,
            "steps": params.steps,
            "n": 1,
        }
        if image is not None:
            horde_params["denoising_strength"] = params.strength
        payload = {
            "prompt": f"{prompt.prompt} ### {prompt.negative_prompt}",
            "params": horde_params,
            "nsfw": config.NSFW != "disallow",
            "censor_nsfw": config.NSFW == "censor",
            "trusted_workers": config.TRUSTED_WORKERS,
            "r2": False,
        }
        if params.model:
            payload["models"] = [params.model]
        if image is not None:
            payload["source_image"] = image.base64
            payload["source_processing"] = "img2img"
        action = "img2img" if image is not None else "generate"
        return BackendRequest("/api/v2/generate/async", payload, params, prompt, action=action, echo=params.echo())

    async def parse_response(self, response, request, http, token, task_id, on_pending):
        job_id = response.json().get("id")
        if not job_id:
            return ""
        logger.info(f"🌐 [{self.name} {task_id}] Job {job_id} queued")
        headers = self.headers(token)

        async def check():
            status = await http.get(self.url(f"/api/v2/generate/check/{job_id}"), headers=headers)
            status.raise_for_status()
            data = status.json()
            if data.get("faulted"):
                raise TransportFailure(".response-error", "faulted")
            if data.get("is_possible") is False:
                raise TransportFailure(".response-error", "impossible")
            if data.get("done"):
                return True
            return JobPending(job_id, data.get("queue_position"), data.get("wait_time"))

        await self.poll(check, task_id, on_pending)

        result = await http.get(self.url(f"/api/v2/generate/status/{job_id}"), headers=headers)
        result.raise_for_status()
        generations = result.json().get("generations") or []
        if not generations:
            return ""
        img = generations[0].get("img") or ""
        if img.startswith(("http://", "https://")):
            download = await http.get(img)
            download.raise_for_status()
            return base64.b64encode(download.content).decode("utf-8")
        return strip_data_prefix(img)


def find_sampler(graph: Dict) -> Optional[Dict]:
    for node in graph.values():
        if isinstance(node, dict) and node.get("class_type") == "KSampler":
            return node
    return None


def load_workflow(path: Optional[str], default_name: str) -> Dict:
    """Read an API-format graph. Raises ValueError for anything unusable."""
    path = path or os.path.join(WORKFLOW_DIR, default_name)
    try:
        with open(path, "r", encoding="utf-8") as f:
            workflow = json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"Cannot load ComfyUI workflow {path}: {e}") from e
    if not isinstance(workflow, dict) or find_sampler(workflow) is None:
        raise ValueError(f"ComfyUI workflow {path} has no KSampler node")
    return workflow


def upload_name(image: SourceImage) -> str:
    return f"novelai-bridge-{hashlib.sha256(image.buffer).hexdigest()[:16]}.png"


def patch_workflow(
    workflow: Dict,
    params: ResolvedParameters,
    prompt: CanonicalPrompt,
    image_name: Optional[str] = None,
) -> Dict:
    """Copy an API-format graph and write the resolved values into it.

    Prompt text goes to whichever CLIPTextEncode nodes the KSampler's
    positive/negative inputs link to.
    """
    graph = copy.deepcopy(workflow)
    sampler = find_sampler(graph)
    if sampler is None:
        raise ValueError("ComfyUI workflow has no KSampler node")

    inputs = sampler.setdefault("inputs", {})
    inputs.update(
        seed=params.seed,
        steps=params.steps,
        cfg=params.scale,
        sampler_name=params.sampler_key,
    )
    if params.scheduler:
        inputs["scheduler"] = params.scheduler
    if params.source_image is not None and params.strength is not None:
        inputs["denoise"] = params.strength

    for key, text in (("positive", prompt.prompt), ("negative", prompt.negative_prompt)):
        link = inputs.get(key)
        if isinstance(link, list) and link and str(link[0]) in graph:
            graph[str(link[0])]["inputs"]["text"] = text

    for node in graph.values():
        kind = node.get("class_type")
        node_inputs = node.setdefault("inputs", {})
        if kind == "CheckpointLoaderSimple" and params.model:
            node_inputs["ckpt_name"] = params.model
        elif kind == "EmptyLatentImage":
            node_inputs.update(width=params.width, height=params.height, batch_size=1)
        elif kind == "ImageScale":
            node_inputs.update(width=params.width, height=params.height)
        elif kind == "LoadImage" and image_name:
            node_inputs["image"] = image_name
    return graph


class ComfyUIClient(ProviderClient):
    """ComfyUI node-graph server."""
    name = "ComfyUI"

    def __init__(self, config):
        super().__init__(config)
        self.text2image = load_workflow(config.WORKFLOW_TEXT2IMAGE, "text2image.json")
        self.image2image = load_workflow(config.WORKFLOW_IMAGE2IMAGE, "image2image.json")

    def build_request(self, params, prompt):
        image = params.source_image
        if image is not None:
            graph = patch_workflow(self.image2image, params, prompt, upload_name(image))
            action = "img2img"
        else:
            graph = patch_workflow(self.text2image, params, prompt)
            action = "generate"
        payload = {"prompt": graph, "client_id": uuid.uuid4().hex}
        return BackendRequest("/prompt", payload, params, prompt, action=action, echo=params.echo())

    async def submit(self, http, request, token):
        image = request.params.source_image if request.params is not None else None
        if image is not None:
            upload = await http.post(
                self.url("/upload/image"),
                files={"image": (upload_name(image), image.buffer, "image/png")},
                data={"type": "input", "overwrite": "true"},
                headers=self.headers(token),
            )
            upload.raise_for_status()
        return await super().submit(http, request, token)

    async def parse_response(self, response, request, http, token, task_id, on_pending):
        prompt_id = response.json().get("prompt_id")
        if not prompt_id:
            return ""
        logger.info(f"🌐 [{self.name} {task_id}] Prompt {prompt_id} queued")
        headers = self.headers(token)

        async def check():
            history = await http.get(self.url(f"/history/{prompt_id}"), headers=headers)
            history.raise_for_status()
            entry = history.json().get(prompt_id)
            if not entry:
                return JobPending(prompt_id)
            if entry.get("status", {}).get("status_str") == "error":
                raise TransportFailure(".response-error", "error")
            return entry

        entry = await self.poll(check, task_id, on_pending)
        for node_output in (entry.get("outputs") or {}).values():
            for info in node_output.get("images") or []:
                view = await http.get(
                    self.url("/view"),
                    params={
                        "filename": info.get("filename", ""),
                        "subfolder": info.get("subfolder", ""),
                        "type": info.get("type", "output"),
                    },
                    headers=headers,
                )
                view.raise_for_status()
                return base64.b64encode(view.content).decode("utf-8")
        return ""


CLIENTS = {
    "token": NovelAIClient,
    "login": NovelAIClient,
    "naifu": NaifuClient,
    "sd-webui": SDWebUIClient,
    "stable-horde": StableHordeClient,
    "comfyui": ComfyUIClient,
}


def create_client(config) -> ProviderClient:
    return CLIENTS[config.TYPE](config)
