"""Request orchestration.

normalize -> resolve -> admit -> credential -> build -> dispatch -> release.
Every failure the caller can act on comes back as a RequestFailure; the gate
slot is released on every exit path.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Union

from .auth import CREDENTIAL_KEYS, TokenCache, login
from .config import Config
from .dispatch import dispatch
from .errors import BridgeError, RequestFailure, ValidationError
from .forbidden import ForbiddenRuleSet
from .gate import ConcurrencyGate, Task
from .images import SourceImage
from .params import GenerationOptions, parse_resolution, resolve_parameters
from .prompt import normalize_prompt
from .providers import JobPending, UpscaleOptions, create_client

logger = logging.getLogger(__name__)

Notify = Callable[..., None]


@dataclass
class GenerationResult:
    image_base64: str
    seed: int
    sampler: str
    steps: int
    scale: float
    prompt: str
    negative_prompt: str
    strength: Optional[float] = None
    noise: Optional[float] = None
    queue_depth: int = 0
    echo: Dict = field(default_factory=dict)


@dataclass
class UpscaleResult:
    image_base64: str
    queue_depth: int = 0
    echo: Dict = field(default_factory=dict)


class ImageRequestService:
    """Shared state for one bridge process: gate, rule set, credential, adapter."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.gate = ConcurrencyGate(self.config.MAX_CONCURRENCY)
        self.forbidden = ForbiddenRuleSet(self.config.FORBIDDEN)
        self.tokens = TokenCache(self._fetch_token)
        self.client = create_client(self.config)

    async def _fetch_token(self) -> Optional[str]:
        return await login(self.config)

    def reconfigure(self, config: Config) -> None:
        """Swap in a new configuration.

        The adapter is rebuilt first so a bad configuration leaves the old one
        in place. Requests already in flight keep the adapter they started with.
        """
        client = create_client(config)
        old = self.config
        self.config = config
        self.client = client
        self.forbidden.update(config.FORBIDDEN)
        if old.snapshot(*CREDENTIAL_KEYS) != config.snapshot(*CREDENTIAL_KEYS):
            self.tokens.invalidate()
        self.gate.max_concurrency = config.MAX_CONCURRENCY
        logger.info(f"[Service] Reconfigured: backend={config.TYPE}, max_concurrency={config.MAX_CONCURRENCY or 'unlimited'}")

    def status(self) -> Dict:
        config = self.config
        return {
            "backend": config.TYPE,
            "endpoint": self.client.endpoint,
            "model": config.model,
            "sampler": config.sampler,
            "pending": self.gate.pending,
            "max_concurrency": config.MAX_CONCURRENCY,
            "forbidden_rules": len(self.forbidden.rules),
        }

    @staticmethod
    def _announce(task: Task, notify: Optional[Notify]) -> None:
        if notify is None:
            return
        if task.queue_depth:
            notify(".pending", task.queue_depth)
        else:
            notify(".waiting")

    async def _token(self, task: Task) -> Optional[str]:
        # credential failures are classified like any other backend call
        return await dispatch(self.tokens.get, 1, task.id)

    async def generate(
        self,
        raw: Optional[str],
        options: Optional[GenerationOptions] = None,
        scope: str = "default",
        image: Optional[SourceImage] = None,
        notify: Optional[Notify] = None,
    ) -> Union[GenerationResult, RequestFailure]:
        options = options or GenerationOptions()
        config, client = self.config, self.client
        try:
            prompt = normalize_prompt(raw, config, self.forbidden.rules, options.override)
            params = resolve_parameters(options, config, image)

            with self.gate.slot(scope) as task:
                self._announce(task, notify)
                token = await self._token(task)
                request = client.build_request(params, prompt)
                last_position = []

                def on_pending(state: JobPending):
                    if notify is not None and state.queue_position and state.queue_position not in last_position:
                        last_position[:] = [state.queue_position]
                        notify(".pending", state.queue_position)

                result = await dispatch(
                    lambda: client.generate(request, token, task.id, on_pending),
                    config.MAX_RETRY_COUNT,
                    task.id,
                )
        except BridgeError as e:
            logger.warning(f"[Service] Request in scope={scope} failed: {e.kind} {e.key} {e.params}")
            return e.to_failure()

        logger.info(f"✅ [Service {task.id}] Generated seed={params.seed} ({len(prompt.positive_tags)} tags)")
        with_image = params.source_image is not None
        return GenerationResult(
            image_base64=result.image_base64,
            seed=params.seed,
            sampler=params.sampler_key,
            steps=params.steps,
            scale=params.scale,
            prompt=prompt.prompt,
            negative_prompt=prompt.negative_prompt,
            strength=params.strength if with_image else None,
            noise=params.noise if with_image else None,
            queue_depth=task.queue_depth,
            echo=result.echo,
        )

    async def upscale(
        self,
        image: Optional[SourceImage],
        options: Optional[UpscaleOptions] = None,
        scope: str = "default",
        notify: Optional[Notify] = None,
    ) -> Union[UpscaleResult, RequestFailure]:
        options = options or UpscaleOptions()
        config, client = self.config, self.client
        try:
            if not config.ENABLE_UPSCALE:
                raise ValidationError(".upscale-unavailable")
            if image is None:
                raise ValidationError(".expect-image")
            if isinstance(options.resolution, str):
                options.resolution = parse_resolution(options.resolution, config)
            request = client.build_upscale_request(image, options)

            with self.gate.slot(scope) as task:
                self._announce(task, notify)
                token = await self._token(task)
                result = await dispatch(
                    lambda: client.generate(request, token, task.id),
                    config.MAX_RETRY_COUNT,
                    task.id,
                )
        except BridgeError as e:
            logger.warning(f"[Service] Upscale in scope={scope} failed: {e.kind} {e.key} {e.params}")
            return e.to_failure()

        return UpscaleResult(image_base64=result.image_base64, queue_depth=task.queue_depth, echo=result.echo)
