import base64
import unittest

import httpx

from fakes import FakeAsyncClient, make_config, png_bytes

from novelai_bridge import providers
from novelai_bridge.errors import EmptyResponse, TransportFailure, ValidationError
from novelai_bridge.images import SourceImage
from novelai_bridge.params import ResolvedParameters
from novelai_bridge.prompt import CanonicalPrompt
from novelai_bridge.providers import (
    ComfyUIClient,
    JobPending,
    NaifuClient,
    NovelAIClient,
    SDWebUIClient,
    StableHordeClient,
    UpscaleOptions,
    create_client,
    load_workflow,
    patch_workflow,
)

PROMPT = CanonicalPrompt(("1girl", "smile", "masterpiece"), ("lowres",))
NAI_BODY = "event: newImage\nid: 1\ndata:QUJDRA=="


def make_params(image=None, **overrides):
    values = dict(
        seed=42,
        width=832,
        height=1216,
        steps=28,
        scale=11.0,
        sampler_key="k_euler_a",
        model=None,
        scheduler=None,
        strength=0.7 if image is not None else None,
        noise=0.2 if image is not None else None,
        source_image=image,
    )
    values.update(overrides)
    return ResolvedParameters(**values)


class ProviderTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.original_async_client = providers.httpx.AsyncClient
        providers.httpx.AsyncClient = FakeAsyncClient
        FakeAsyncClient.reset()

    def tearDown(self):
        providers.httpx.AsyncClient = self.original_async_client


class NovelAIClientTests(ProviderTestCase):
    def setUp(self):
        super().setUp()
        self.client = NovelAIClient(make_config(TYPE="token", HEADERS={"x-extra": "1"}))

    def test_text_payload(self):
        request = self.client.build_request(make_params(model="nai-v3", scheduler="native"), PROMPT)
        self.assertEqual(request.path, "/ai/generate-image")
        payload = request.payload
        self.assertEqual(payload["model"], "nai-diffusion-3")
        self.assertEqual(payload["input"], "1girl, smile, masterpiece")
        self.assertEqual(payload["action"], "generate")
        parameters = payload["parameters"]
        self.assertEqual(parameters["sampler"], "k_euler_ancestral")
        self.assertEqual(parameters["uc"], "lowres")
        self.assertEqual(parameters["params_version"], 1)
        self.assertEqual(parameters["noise_schedule"], "native")
        self.assertNotIn("prompt", parameters)
        self.assertNotIn("image", parameters)

    def test_image_payload(self):
        image = SourceImage.from_bytes(png_bytes(512, 768))
        request = self.client.build_request(make_params(image, model="nai-v3"), PROMPT)
        parameters = request.payload["parameters"]
        self.assertEqual(request.payload["action"], "img2img")
        self.assertEqual(parameters["image"], image.base64)
        self.assertEqual(parameters["strength"], 0.7)
        self.assertEqual(parameters["extra_noise_seed"], 42)

    def test_v4_payload(self):
        request = self.client.build_request(
            make_params(model="nai-v4-curated-preview", scheduler="native", sampler_key="k_dpmpp_2m_sde"),
            PROMPT,
        )
        parameters = request.payload["parameters"]
        self.assertEqual(request.payload["model"], "nai-diffusion-4-curated-preview")
        self.assertEqual(parameters["sampler"], "k_dpmpp_2m_sde")
        self.assertEqual(parameters["noise_schedule"], "karras")
        self.assertEqual(parameters["v4_prompt"]["caption"]["base_caption"], "1girl, smile, masterpiece")
        self.assertEqual(parameters["v4_negative_prompt"]["caption"]["base_caption"], "lowres")

    def test_v4_schedule_limited_to_supported(self):
        for scheduler, expected in (("exponential", "exponential"), ("Automatic", "karras"), (None, "karras")):
            request = self.client.build_request(make_params(model="nai-v4-curated-preview", scheduler=scheduler), PROMPT)
            self.assertEqual(request.payload["parameters"]["noise_schedule"], expected)

    async def test_generate_strips_stream_header(self):
        url = "https://image.novelai.net/ai/generate-image"
        FakeAsyncClient.set_route("POST", url, httpx.Response(200, text=NAI_BODY))
        request = self.client.build_request(make_params(model="nai-v3"), PROMPT)
        result = await self.client.generate(request, token="tok", task_id="t1")
        self.assertEqual(result.image_base64, "QUJDRA==")
        self.assertEqual(result.echo["seed"], 42)
        headers = FakeAsyncClient.calls_to("POST", url)[0][2]["headers"]
        self.assertEqual(headers["authorization"], "Bearer tok")
        self.assertEqual(headers["x-extra"], "1")

    async def test_empty_body(self):
        FakeAsyncClient.set_route("POST", "https://image.novelai.net/ai/generate-image", httpx.Response(200, text=""))
        request = self.client.build_request(make_params(model="nai-v3"), PROMPT)
        with self.assertRaises(EmptyResponse):
            await self.client.generate(request, token="tok")

    async def test_status_error_propagates(self):
        FakeAsyncClient.set_route("POST", "https://image.novelai.net/ai/generate-image", httpx.Response(402, text="no anlas"))
        request = self.client.build_request(make_params(model="nai-v3"), PROMPT)
        with self.assertRaises(httpx.HTTPStatusError):
            await self.client.generate(request, token="tok")


class NaifuClientTests(ProviderTestCase):
    async def test_flat_payload(self):
        client = NaifuClient(make_config(TYPE="naifu", ENDPOINT="http://naifu.local/"))
        request = client.build_request(make_params(), PROMPT)
        self.assertEqual(request.path, "/generate-stream")
        self.assertEqual(request.payload["prompt"], "1girl, smile, masterpiece")
        self.assertEqual(request.payload["sampler"], "k_euler_ancestral")
        self.assertNotIn("parameters", request.payload)

        FakeAsyncClient.set_route("POST", "http://naifu.local/generate-stream", httpx.Response(200, text=NAI_BODY))
        result = await client.generate(request)
        self.assertEqual(result.image_base64, "QUJDRA==")
        headers = FakeAsyncClient.calls[0][2]["headers"]
        self.assertNotIn("authorization", headers)


class SDWebUIClientTests(ProviderTestCase):
    def make_client(self, **overrides):
        return SDWebUIClient(make_config(TYPE="sd-webui", ENDPOINT="http://sd.local", **overrides))

    def test_txt2img_payload(self):
        request = self.make_client(HIRES_FIX=True).build_request(make_params(scheduler="Karras"), PROMPT)
        payload = request.payload
        self.assertEqual(request.path, "/sdapi/v1/txt2img")
        self.assertEqual(payload["sampler_index"], "Euler a")
        self.assertEqual(payload["cfg_scale"], 11.0)
        self.assertEqual(payload["negative_prompt"], "lowres")
        self.assertEqual(payload["batch_size"], 1)
        self.assertEqual(payload["scheduler"], "Karras")
        self.assertTrue(payload["enable_hr"])
        self.assertEqual(payload["hr_upscaler"], "Latent")
        self.assertNotIn("denoising_strength", payload)
        self.assertNotIn("init_images", payload)

    def test_hires_upscaler_checked_at_configuration(self):
        self.assertEqual(self.make_client(HIRES_FIX_UPSCALER="R-ESRGAN 4x+").config.HIRES_FIX_UPSCALER, "R-ESRGAN 4x+")
        with self.assertRaises(ValueError):
            self.make_client(HIRES_FIX_UPSCALER="Magic")

    def test_img2img_payload(self):
        image = SourceImage.from_bytes(png_bytes(512, 768))
        request = self.make_client().build_request(make_params(image), PROMPT)
        self.assertEqual(request.path, "/sdapi/v1/img2img")
        self.assertEqual(request.payload["init_images"], [image.data_url])
        self.assertTrue(image.data_url.startswith("data:image/png;base64,"))
        self.assertEqual(request.payload["denoising_strength"], 0.7)

    def test_dantaggen_only_for_short_prompts(self):
        client = self.make_client(DTG_ENABLED=True, DTG_DISABLE_AFTER_LEN=10)
        request = client.build_request(make_params(), PROMPT)
        args = request.payload["alwayson_scripts"]["DanTagGen"]["args"]
        self.assertTrue(args[0])
        self.assertEqual(args[1], 10)

        client = self.make_client(DTG_ENABLED=True, DTG_DISABLE_AFTER_LEN=2)
        request = client.build_request(make_params(), PROMPT)
        self.assertNotIn("alwayson_scripts", request.payload)

    async def test_generate_strips_data_prefix(self):
        FakeAsyncClient.set_route(
            "POST", "http://sd.local/sdapi/v1/txt2img",
            httpx.Response(200, json={"images": ["data:image/png;base64,QUJD"]}),
        )
        client = self.make_client()
        result = await client.generate(client.build_request(make_params(), PROMPT))
        self.assertEqual(result.image_base64, "QUJD")

    async def test_no_images(self):
        FakeAsyncClient.set_route("POST", "http://sd.local/sdapi/v1/txt2img", httpx.Response(200, json={"images": []}))
        client = self.make_client()
        with self.assertRaises(EmptyResponse):
            await client.generate(client.build_request(make_params(), PROMPT))

    def test_upscale_validates_upscalers(self):
        image = SourceImage.from_bytes(png_bytes())
        with self.assertRaises(ValidationError) as ctx:
            self.make_client().build_upscale_request(image, UpscaleOptions(upscaler="Magic"))
        self.assertEqual(ctx.exception.key, ".invalid-upscaler")
        with self.assertRaises(ValidationError):
            self.make_client().build_upscale_request(image, UpscaleOptions(upscaler2="Magic"))

    async def test_upscale(self):
        image = SourceImage.from_bytes(png_bytes())
        client = self.make_client()
        request = client.build_upscale_request(
            image, UpscaleOptions(resolution={"width": 1024, "height": 1024}, upscaler="R-ESRGAN 4x+"),
        )
        self.assertEqual(request.path, "/sdapi/v1/extra-single-image")
        self.assertEqual(request.payload["resize_mode"], 1)
        self.assertEqual(request.payload["upscaling_resize_w"], 1024)
        self.assertEqual(request.payload["upscaler_2"], "None")

        FakeAsyncClient.set_route(
            "POST", "http://sd.local/sdapi/v1/extra-single-image",
            httpx.Response(200, json={"image": "data:image/png;base64,VVA="}),
        )
        result = await client.generate(request)
        self.assertEqual(result.image_base64, "VVA=")
        self.assertEqual(result.echo["upscaler"], "R-ESRGAN 4x+")

    def test_other_backends_cannot_upscale(self):
        client = NaifuClient(make_config(TYPE="naifu", ENDPOINT="http://naifu.local"))
        with self.assertRaises(ValidationError):
            client.build_upscale_request(SourceImage.from_bytes(png_bytes()), UpscaleOptions())


class StableHordeClientTests(ProviderTestCase):
    base = "https://stablehorde.net/api/v2/generate"

    def setUp(self):
        super().setUp()
        self.client = StableHordeClient(make_config(TYPE="stable-horde", NSFW="censor"))

    def test_payload(self):
        image = SourceImage.from_bytes(png_bytes())
        request = self.client.build_request(make_params(image, scheduler="karras", model="AlbedoBase XL"), PROMPT)
        payload = request.payload
        self.assertEqual(payload["prompt"], "1girl, smile, masterpiece ### lowres")
        self.assertEqual(payload["params"]["seed"], "42")
        self.assertTrue(payload["params"]["karras"])
        self.assertEqual(payload["params"]["denoising_strength"], 0.7)
        self.assertTrue(payload["nsfw"])
        self.assertTrue(payload["censor_nsfw"])
        self.assertEqual(payload["source_processing"], "img2img")
        self.assertEqual(payload["models"], ["AlbedoBase XL"])

    def test_anonymous_key(self):
        self.assertEqual(self.client.headers(None)["apikey"], "0000000000")
        self.assertEqual(self.client.headers("key")["apikey"], "key")

    async def test_polls_until_done(self):
        FakeAsyncClient.set_route("POST", f"{self.base}/async", httpx.Response(202, json={"id": "job1"}))
        FakeAsyncClient.set_route(
            "GET", f"{self.base}/check/job1",
            httpx.Response(200, json={"done": False, "queue_position": 3, "wait_time": 20}),
            httpx.Response(200, json={"done": False, "queue_position": 1, "wait_time": 5}),
            httpx.Response(200, json={"done": True}),
        )
        FakeAsyncClient.set_route(
            "GET", f"{self.base}/status/job1",
            httpx.Response(200, json={"generations": [{"img": "SE9SREU="}]}),
        )
        seen = []
        request = self.client.build_request(make_params(model="AlbedoBase XL"), PROMPT)
        result = await self.client.generate(request, task_id="t1", on_pending=seen.append)
        self.assertEqual(result.image_base64, "SE9SREU=")
        self.assertEqual(seen, [JobPending("job1", 3, 20), JobPending("job1", 1, 5)])

    async def test_downloads_url_results(self):
        FakeAsyncClient.set_route("POST", f"{self.base}/async", httpx.Response(202, json={"id": "job2"}))
        FakeAsyncClient.set_route("GET", f"{self.base}/check/job2", httpx.Response(200, json={"done": True}))
        FakeAsyncClient.set_route(
            "GET", f"{self.base}/status/job2",
            httpx.Response(200, json={"generations": [{"img": "https://cdn.local/job2.webp"}]}),
        )
        FakeAsyncClient.set_route("GET", "https://cdn.local/job2.webp", httpx.Response(200, content=b"webp"))
        result = await self.client.generate(self.client.build_request(make_params(), PROMPT))
        self.assertEqual(base64.b64decode(result.image_base64), b"webp")

    async def test_faulted_job(self):
        FakeAsyncClient.set_route("POST", f"{self.base}/async", httpx.Response(202, json={"id": "job3"}))
        FakeAsyncClient.set_route("GET", f"{self.base}/check/job3", httpx.Response(200, json={"faulted": True}))
        with self.assertRaises(TransportFailure) as ctx:
            await self.client.generate(self.client.build_request(make_params(), PROMPT))
        self.assertEqual(ctx.exception.key, ".response-error")

    async def test_poll_deadline(self):
        client = StableHordeClient(make_config(TYPE="stable-horde", POLL_TIMEOUT=0))
        FakeAsyncClient.set_route("POST", f"{self.base}/async", httpx.Response(202, json={"id": "job4"}))
        FakeAsyncClient.set_route("GET", f"{self.base}/check/job4", httpx.Response(200, json={"done": False}))
        with self.assertRaises(TransportFailure) as ctx:
            await client.generate(client.build_request(make_params(), PROMPT))
        self.assertEqual(ctx.exception.key, ".request-timeout")


class ComfyUIClientTests(ProviderTestCase):
    def setUp(self):
        super().setUp()
        self.client = ComfyUIClient(make_config(TYPE="comfyui", ENDPOINT="http://comfy.local:8188"))

    def test_patch_workflow(self):
        template = load_workflow(None, "text2image.json")
        graph = patch_workflow(template, make_params(sampler_key="euler", scheduler="karras", model="anime.safetensors"), PROMPT)
        self.assertEqual(graph["6"]["inputs"]["text"], "1girl, smile, masterpiece")
        self.assertEqual(graph["7"]["inputs"]["text"], "lowres")
        self.assertEqual(graph["3"]["inputs"]["seed"], 42)
        self.assertEqual(graph["3"]["inputs"]["scheduler"], "karras")
        self.assertEqual(graph["4"]["inputs"]["ckpt_name"], "anime.safetensors")
        self.assertEqual(graph["5"]["inputs"]["width"], 832)
        # the template itself is untouched
        self.assertEqual(template["6"]["inputs"]["text"], "")

    def test_workflow_without_sampler(self):
        with self.assertRaises(ValueError):
            patch_workflow({"1": {"class_type": "SaveImage", "inputs": {}}}, make_params(), PROMPT)

    async def test_generate_text(self):
        FakeAsyncClient.set_route("POST", "http://comfy.local:8188/prompt", httpx.Response(200, json={"prompt_id": "p1"}))
        FakeAsyncClient.set_route(
            "GET", "http://comfy.local:8188/history/p1",
            httpx.Response(200, json={}),
            httpx.Response(200, json={"p1": {"outputs": {"9": {"images": [{"filename": "out.png", "subfolder": "", "type": "output"}]}}}}),
        )
        FakeAsyncClient.set_route("GET", "http://comfy.local:8188/view", httpx.Response(200, content=b"comfy"))
        seen = []
        result = await self.client.generate(
            self.client.build_request(make_params(sampler_key="euler"), PROMPT), on_pending=seen.append,
        )
        self.assertEqual(base64.b64decode(result.image_base64), b"comfy")
        self.assertEqual(seen, [JobPending("p1")])
        view = FakeAsyncClient.calls_to("GET", "http://comfy.local:8188/view")[0][2]
        self.assertEqual(view["params"]["filename"], "out.png")

    async def test_generate_image_uploads_source(self):
        image = SourceImage.from_bytes(png_bytes(512, 768))
        request = self.client.build_request(make_params(image, sampler_key="euler", width=512, height=768), PROMPT)
        name = providers.upload_name(image)
        graph = request.payload["prompt"]
        self.assertEqual(graph["10"]["inputs"]["image"], name)
        self.assertEqual(graph["11"]["inputs"]["width"], 512)
        self.assertEqual(graph["3"]["inputs"]["denoise"], 0.7)

        FakeAsyncClient.set_route("POST", "http://comfy.local:8188/upload/image", httpx.Response(200, json={"name": name}))
        FakeAsyncClient.set_route("POST", "http://comfy.local:8188/prompt", httpx.Response(200, json={"prompt_id": "p2"}))
        FakeAsyncClient.set_route(
            "GET", "http://comfy.local:8188/history/p2",
            httpx.Response(200, json={"p2": {"outputs": {"9": {"images": [{"filename": "o.png"}]}}}}),
        )
        FakeAsyncClient.set_route("GET", "http://comfy.local:8188/view", httpx.Response(200, content=b"edited"))
        result = await self.client.generate(request)
        self.assertEqual(base64.b64decode(result.image_base64), b"edited")
        upload = FakeAsyncClient.calls_to("POST", "http://comfy.local:8188/upload/image")[0][2]
        self.assertEqual(upload["files"]["image"][0], name)


class CreateClientTests(unittest.TestCase):
    def test_selects_adapter(self):
        self.assertIsInstance(create_client(make_config(TYPE="login")), NovelAIClient)
        self.assertIsInstance(create_client(make_config(TYPE="stable-horde")), StableHordeClient)
        self.assertIsInstance(create_client(make_config(TYPE="sd-webui", ENDPOINT="http://sd.local")), SDWebUIClient)

    def test_missing_endpoint(self):
        with self.assertRaises(ValueError):
            create_client(make_config(TYPE="comfyui"))


if __name__ == "__main__":
    unittest.main()
