"""Tests for CircleCIProvider against a mocked CircleCI API."""

import hashlib
import hmac
import json

import httpx
import pytest

from cirelay.engine.orchestrator import BuildOrchestrator
from cirelay.errors import ConfigurationError, PollError, TriggerError
from cirelay.models.build import BuildStatus
from cirelay.providers.circleci import CircleCIProvider
from cirelay.providers.registry import ProviderRegistry
from cirelay.sink.memory import MemorySink

from conftest import NO_WAIT, make_message

SLUG = "gh/acme/api"


def make_circleci(handler, **overrides) -> CircleCIProvider:
    config = {"api_token": "cci-token", "project_slug": SLUG, "queue_wait": 0, "poll_interval": 0, **overrides}
    return CircleCIProvider(config, transport=httpx.MockTransport(handler), retry=NO_WAIT)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestConfig:
    def test_missing_fields(self):
        with pytest.raises(ConfigurationError, match="project_slug is required"):
            CircleCIProvider({"api_token": "t"}).validate_config()

    async def test_token_header_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["token"] = request.headers.get("Circle-Token")
            return httpx.Response(200, json={"status": "running"})

        await make_circleci(handler).get_build_status("wf1")
        assert seen["token"] == "cci-token"


class TestTrigger:
    async def test_pipeline_and_workflow(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == f"/api/v2/project/{SLUG}/pipeline":
                bodies.append(json.loads(request.content))
                return httpx.Response(201, json={"id": "pipe-1", "number": 101})
            if path == "/api/v2/pipeline/pipe-1/workflow":
                return httpx.Response(200, json={"items": [{"id": "wf-1", "name": "build"}]})
            return httpx.Response(404)

        info = await make_circleci(handler).trigger_build({"BRANCH": "release", "VERSION": "2.0"})
        assert info.build_id == "wf-1"
        assert info.build_number == 101
        assert info.pipeline_id == "pipe-1"
        assert info.build_url.endswith(f"{SLUG}/101/workflows/wf-1")
        assert bodies == [{"parameters": {"BRANCH": "release", "VERSION": "2.0"}, "branch": "release"}]

    async def test_no_workflow_is_trigger_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(201, json={"id": "pipe-1", "number": 1})
            return httpx.Response(200, json={"items": []})

        with pytest.raises(TriggerError, match="no workflow"):
            await make_circleci(handler, resolve_attempts=2).trigger_build({})

    async def test_rejected(self):
        with pytest.raises(TriggerError):
            await make_circleci(lambda r: httpx.Response(400, json={"message": "bad"})).trigger_build({})


class TestStatus:
    @pytest.mark.parametrize(
        ("native", "expected"),
        [
            ("running", BuildStatus.running),
            ("success", BuildStatus.success),
            ("failed", BuildStatus.failure),
            ("error", BuildStatus.failure),
            ("failing", BuildStatus.failure),
            ("unauthorized", BuildStatus.failure),
            ("canceled", BuildStatus.cancelled),
            ("on_hold", BuildStatus.pending),
            ("not_run", BuildStatus.pending),
        ],
    )
    async def test_classification(self, native, expected):
        info = await make_circleci(lambda r: httpx.Response(200, json={"status": native})).get_build_status("wf")
        assert info.status == expected

    async def test_finished_workflow(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "pipeline_number": 101,
                    "created_at": "2024-05-01T10:00:00Z",
                    "stopped_at": "2024-05-01T10:01:30.500Z",
                },
            )

        info = await make_circleci(handler).get_build_status("wf-1")
        assert info.building is False
        assert info.duration == 90_500
        assert info.duration_seconds == "90.50"
        assert info.build_number == 101

    async def test_running_workflow_is_building(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "running", "created_at": "2024-05-01T10:00:00Z"})

        info = await make_circleci(handler).get_build_status("wf-1")
        assert info.building is True
        assert info.duration is None

    async def test_failure_mid_run_keeps_building(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "failing", "stopped_at": None})

        info = await make_circleci(handler).get_build_status("wf-1")
        assert info.status == BuildStatus.failure
        assert info.building is True

    async def test_poll_error(self):
        with pytest.raises(PollError):
            await make_circleci(lambda r: httpx.Response(404)).get_build_status("wf-1")

    async def test_no_stage_list(self):
        assert await make_circleci(lambda r: httpx.Response(200)).get_stages("wf-1") is None


def _job_api(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/v2/workflow/wf-1":
        return httpx.Response(200, json={"status": "failed", "stopped_at": "2024-05-01T10:01:00Z"})
    if path == "/api/v2/workflow/wf-1/job":
        return httpx.Response(
            200,
            json={
                "items": [
                    {"job_number": 1, "name": "build", "status": "success"},
                    {"job_number": 2, "name": "deploy", "status": "running"},
                    {"job_number": 3, "name": "lint", "status": "failed"},
                ]
            },
        )
    if path == f"/api/v1.1/project/{SLUG}/1":
        return httpx.Response(
            200,
            json={
                "steps": [
                    {"actions": [{"output_url": "https://output.example/1/a"}]},
                    {"actions": [{"output_url": None}, {"output_url": "https://output.example/1/b"}]},
                ]
            },
        )
    if path == "/1/a":
        return httpx.Response(200, json=[{"message": "checkout\n"}])
    if path == "/1/b":
        return httpx.Response(200, json=[{"message": "compile\n"}, {"message": "done\n"}])
    return httpx.Response(404)


class TestLogs:
    async def test_finished_jobs_emitted_once(self):
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)

        await make_circleci(_job_api).stream_logs("wf-1", on_chunk)
        assert chunks == [
            "\n=== Job: build ===\n",
            "checkout\ncompile\ndone\n",
            "\n=== Job: lint ===\n",
            "[Logs not available for job 3]",
        ]

    async def test_complete_logs_match_stream(self):
        provider = make_circleci(_job_api)
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)

        await provider.stream_logs("wf-1", on_chunk)
        assert await provider.get_complete_logs("wf-1") == "".join(chunks)

    async def test_job_list_failure(self):
        async def on_chunk(chunk):
            pass

        with pytest.raises(PollError):
            await make_circleci(lambda r: httpx.Response(404)).stream_logs("wf-1", on_chunk)


class RunningWorkflowAPI:
    """Workflow whose only job finishes on the third workflow read."""

    def __init__(self):
        self.workflow_reads = 0
        self.job_list_reads = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == f"/api/v2/project/{SLUG}/pipeline":
            return httpx.Response(201, json={"id": "pipe-1", "number": 101})
        if path == "/api/v2/pipeline/pipe-1/workflow":
            return httpx.Response(200, json={"items": [{"id": "wf-1", "name": "build"}]})
        if path == "/api/v2/workflow/wf-1":
            self.workflow_reads += 1
            if self.workflow_reads <= 2:
                return httpx.Response(200, json={"status": "running", "created_at": "2024-05-01T10:00:00Z"})
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "pipeline_number": 101,
                    "created_at": "2024-05-01T10:00:00Z",
                    "stopped_at": "2024-05-01T10:00:42Z",
                },
            )
        if path == "/api/v2/workflow/wf-1/job":
            self.job_list_reads += 1
            job_status = "success" if self.workflow_reads >= 2 else "running"
            return httpx.Response(200, json={"items": [{"job_number": 1, "name": "build", "status": job_status}]})
        if path == f"/api/v1.1/project/{SLUG}/1":
            return httpx.Response(200, json={"steps": [{"actions": [{"output_url": "https://output.example/1/a"}]}]})
        if path == "/1/a":
            return httpx.Response(200, json=[{"message": "COMPILED OK\n"}])
        return httpx.Response(404)


class TestRunningWorkflow:
    async def test_jobs_finishing_later_are_streamed(self):
        api = RunningWorkflowAPI()
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)

        await make_circleci(api).stream_logs("wf-1", on_chunk)
        assert chunks == ["\n=== Job: build ===\n", "COMPILED OK\n"]
        assert api.job_list_reads >= 3

    async def test_orchestrated_run_relays_job_output(self, settings):
        api = RunningWorkflowAPI()
        registry = ProviderRegistry()
        registry.register(
            CircleCIProvider,
            {"api_token": "t", "project_slug": SLUG, "queue_wait": 0, "poll_interval": 0},
            transport=httpx.MockTransport(api),
            retry=NO_WAIT,
        )
        sink = MemorySink()
        orchestrator = BuildOrchestrator(registry, sink, settings.model_copy(update={"log_chunk_size": 1}))

        outcome = await orchestrator.run(make_message(provider="circleci"))

        assert outcome.succeeded
        messages = sink.run("r_abc123").messages
        assert "COMPILED OK\n" in messages
        complete = await registry.require("circleci").get_complete_logs("wf-1")
        assert complete == "\n=== Job: build ===\nCOMPILED OK\n"
        assert complete in "".join(messages)
        assert "Build success (42.00s)" in sink.run("r_abc123").status_labels


class TestWebhooks:
    def test_signature_valid(self):
        body = b'{"type":"workflow-completed"}'
        provider = make_circleci(lambda r: httpx.Response(200), webhook_secret="shh")
        assert provider.validate_webhook({"circleci-signature": f"v1={sign('shh', body)}"}, body)

    def test_signature_list(self):
        body = b"{}"
        provider = make_circleci(lambda r: httpx.Response(200), webhook_secret="shh")
        header = f"v1=deadbeef, v1={sign('shh', body)}"
        assert provider.validate_webhook({"CircleCI-Signature": header}, body)

    def test_signature_mismatch(self):
        provider = make_circleci(lambda r: httpx.Response(200), webhook_secret="shh")
        assert not provider.validate_webhook({"circleci-signature": "v1=deadbeef"}, b"{}")
        assert not provider.validate_webhook({"circleci-signature": "v1=ünïcode"}, b"{}")

    def test_signature_missing(self):
        provider = make_circleci(lambda r: httpx.Response(200), webhook_secret="shh")
        assert not provider.validate_webhook({}, b"{}")

    def test_parsed_body_signed_compactly(self):
        payload = {"type": "workflow-completed", "id": 1}
        raw = json.dumps(payload, separators=(",", ":")).encode()
        provider = make_circleci(lambda r: httpx.Response(200), webhook_secret="shh")
        assert provider.validate_webhook({"circleci-signature": sign("shh", raw)}, payload)

    def test_no_secret_accepts(self):
        assert make_circleci(lambda r: httpx.Response(200)).validate_webhook({}, b"{}")

    def test_parse_workflow_event(self):
        provider = make_circleci(lambda r: httpx.Response(200))
        payload = {
            "type": "workflow-completed",
            "workflow": {
                "id": "wf-9",
                "name": "build-and-test",
                "status": "success",
                "url": "https://app.circleci.com/pipelines/gh/acme/api/9/workflows/wf-9",
                "created_at": "2024-05-01T10:00:00Z",
            },
            "pipeline": {
                "number": 9,
                "vcs": {"branch": "main", "revision": "f00d"},
                "trigger": {"actor": {"login": "octocat"}},
            },
        }
        data = provider.normalize_build_data(provider.parse_webhook_payload(payload))
        assert data.provider == "circleci"
        assert data.build_id == "wf-9"
        assert data.build_number == 9
        assert data.status == BuildStatus.success
        assert data.branch == "main"
        assert data.commit == "f00d"
        assert data.author == "octocat"
        assert data.job_name == "build-and-test"

    def test_garbage_payload(self):
        provider = make_circleci(lambda r: httpx.Response(200))
        data = provider.normalize_build_data(provider.parse_webhook_payload({"workflow": "nope", "pipeline": 3}))
        assert data.status == BuildStatus.pending
        assert data.build_id == ""
