import random
import uuid
from typing import Optional

from aiohttp import web
from loguru import logger


class EvolutionServer:
    """Local stand-in for the Evolution API used by the examples and tests"""

    def __init__(
        self,
        instances: Optional[list[str]] = None,
        open_after_polls: int = 3,
        api_key: Optional[str] = None,
        error_rate: float = 0.0,
    ):
        self.instances = set(instances or ["main"])
        self.open_after_polls = open_after_polls
        self.api_key = api_key
        self.error_rate = error_rate
        # number -> status code the server answers with for that recipient
        self.failing_numbers: dict[str, int] = {}
        self.poll_counts: dict[str, int] = {}
        self.sent_messages: list[dict] = []
        self.app = web.Application()
        self.app.router.add_get("/instance/connectionState/{instance}", self.handle_connection_state)
        self.app.router.add_post("/message/sendText/{instance}", self.handle_send_text)
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

    def _unauthorized(self, request: web.Request) -> Optional[web.Response]:
        if self.api_key is not None and request.headers.get("apikey") != self.api_key:
            self.logger.info("Rejecting request without a valid apikey")
            return web.json_response(
                {"status": 401, "error": "Unauthorized", "response": {"message": "Unauthorized"}},
                status=401,
            )
        return None

    def _missing_instance(self, instance: str) -> Optional[web.Response]:
        if instance not in self.instances:
            return web.json_response(
                {
                    "status": 404,
                    "error": "Not Found",
                    "response": {"message": [f'The "{instance}" instance does not exist']},
                },
                status=404,
            )
        return None

    async def handle_connection_state(self, request: web.Request) -> web.Response:
        instance = request.match_info["instance"]
        rejection = self._unauthorized(request) or self._missing_instance(instance)
        if rejection is not None:
            return rejection

        polls = self.poll_counts.get(instance, 0) + 1
        self.poll_counts[instance] = polls
        state = "open" if polls >= self.open_after_polls else "connecting"
        self.logger.info(f"Returning {state} state for {instance} (poll {polls})")
        return web.json_response({"instance": {"instanceName": instance, "state": state}})

    async def handle_send_text(self, request: web.Request) -> web.Response:
        instance = request.match_info["instance"]
        rejection = self._unauthorized(request) or self._missing_instance(instance)
        if rejection is not None:
            return rejection

        body = await request.json()
        number = body.get("number", "")
        if not number or not body.get("text"):
            return web.json_response(
                {"status": 400, "error": "Bad Request", "response": {"message": ["invalid number or text"]}},
                status=400,
            )

        status = self.failing_numbers.get(number)
        if status is None and random.random() < self.error_rate:
            status = 500
        if status == 429:
            self.logger.info(f"Rate limiting message to {number}")
            return web.json_response(
                {"status": 429, "error": "Too Many Requests"},
                status=429,
                headers={"Retry-After": "0"},
            )
        if status is not None:
            self.logger.info(f"Returning {status} for message to {number}")
            return web.json_response({"status": status, "error": "Internal Server Error"}, status=status)

        self.sent_messages.append({"instance": instance, "number": number, "text": body["text"]})
        return web.json_response(
            {"key": {"remoteJid": f"{number}@s.whatsapp.net", "id": uuid.uuid4().hex}, "status": "PENDING"},
            status=201,
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
