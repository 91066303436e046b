import base64
import unittest

import httpx
from fastapi.testclient import TestClient

from fakes import FakeAsyncClient, make_config, png_bytes

from novelai_bridge import providers, server
from novelai_bridge.service import ImageRequestService

SD = "http://sd.local"


class ServerTests(unittest.TestCase):
    def setUp(self):
        self.original_async_client = providers.httpx.AsyncClient
        self.original_service = server.service
        providers.httpx.AsyncClient = FakeAsyncClient
        FakeAsyncClient.reset()
        server.service = ImageRequestService(make_config(TYPE="sd-webui", ENDPOINT=SD, MAX_WORDS=5))
        self.client = TestClient(server.app)

    def tearDown(self):
        providers.httpx.AsyncClient = self.original_async_client
        server.service = self.original_service

    def test_root_and_status(self):
        self.assertEqual(self.client.get("/").json()["backend"], "sd-webui")
        status = self.client.get("/status").json()
        self.assertEqual(status["status"], "running")
        self.assertEqual(status["endpoint"], SD)
        self.assertEqual(status["pending"], 0)

    def test_samplers(self):
        samplers = self.client.get("/sdapi/v1/samplers").json()
        self.assertIn({"name": "Euler a", "aliases": ["k_euler_a"]}, samplers)

    def test_generate(self):
        FakeAsyncClient.set_route(
            "POST", f"{SD}/sdapi/v1/txt2img",
            httpx.Response(200, json={"images": ["data:image/png;base64,QUJD"]}),
        )
        response = self.client.post("/generate", json={"prompt": "1girl, smile", "seed": 9, "resolution": "833x1217"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["images"], ["QUJD"])
        self.assertEqual(body["seed"], 9)
        self.assertEqual(body["prompt"], "1girl, smile, masterpiece")
        self.assertEqual(body["parameters"]["width"], 832)
        self.assertEqual(body["parameters"]["height"], 1216)

    def test_generate_with_data_url_image(self):
        FakeAsyncClient.set_route(
            "POST", f"{SD}/sdapi/v1/img2img",
            httpx.Response(200, json={"images": ["QUJD"]}),
        )
        encoded = base64.b64encode(png_bytes(512, 768)).decode("utf-8")
        response = self.client.post("/generate", json={"prompt": "1girl", "image": f"data:image/png;base64,{encoded}"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["strength"], 0.7)

    def test_sanitation_is_bad_request(self):
        response = self.client.post("/generate", json={"prompt": "a, b, c, d, e, f"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], {"kind": "sanitation", "key": ".too-many-words", "params": []})

    def test_invalid_image(self):
        response = self.client.post("/generate", json={"prompt": "1girl", "image": "bm90IGFuIGltYWdl"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["key"], ".invalid-image")

    def test_admission_is_too_many_requests(self):
        server.service.reconfigure(make_config(TYPE="sd-webui", ENDPOINT=SD, MAX_CONCURRENCY=1))
        held = server.service.gate.try_admit("chan")
        response = self.client.post("/generate", json={"prompt": "1girl", "scope": "chan"})
        server.service.gate.release(held)
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["detail"]["params"], [1])

    def test_transport_failure_is_bad_gateway(self):
        FakeAsyncClient.set_route("POST", f"{SD}/sdapi/v1/txt2img", httpx.Response(500))
        response = self.client.post("/generate", json={"prompt": "1girl"})
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["detail"], {"kind": "transport", "key": ".response-error", "params": [500]})

    def test_upscale(self):
        FakeAsyncClient.set_route(
            "POST", f"{SD}/sdapi/v1/extra-single-image",
            httpx.Response(200, json={"image": "VVA="}),
        )
        encoded = base64.b64encode(png_bytes()).decode("utf-8")
        response = self.client.post("/upscale", json={"image": encoded, "upscaler": "Lanczos"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["image"], "VVA=")

    def test_upscale_bad_upscaler(self):
        encoded = base64.b64encode(png_bytes()).decode("utf-8")
        response = self.client.post("/upscale", json={"image": encoded, "upscaler": "Magic"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["key"], ".invalid-upscaler")


if __name__ == "__main__":
    unittest.main()
