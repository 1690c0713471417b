import pytest

from deploypipe.errors import PipelineError
from deploypipe.services.registry import RegistryService, parse_bearer_challenge, split_repository


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class FakeResponse:
    def __init__(self, status_code, headers=None, payload=None):
        self.status_code = status_code
        self.headers = headers or {}
        self.payload = payload or {}

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, head_responses, token_response=None):
        self.head_responses = list(head_responses)
        self.token_response = token_response
        self.head_calls = []
        self.get_calls = []

    def head(self, url, headers=None, **kwargs):
        self.head_calls.append((url, dict(headers or {})))
        return self.head_responses.pop(0)

    def get(self, url, params=None, **kwargs):
        self.get_calls.append((url, params))
        return self.token_response


def _service(fake):
    return RegistryService(logger=DummyLogger(), requests_module=fake)


def test_split_repository_handles_docker_hub_and_private_registries():
    assert split_repository("nginx") == ("registry-1.docker.io", "library/nginx")
    assert split_repository("acme/app") == ("registry-1.docker.io", "acme/app")
    assert split_repository("registry.example.com:5000/team/app") == (
        "registry.example.com:5000",
        "team/app",
    )
    assert split_repository("localhost/app") == ("localhost", "app")
    assert split_repository("docker.io/library/nginx") == ("registry-1.docker.io", "library/nginx")
    assert split_repository("docker.io/nginx") == ("registry-1.docker.io", "library/nginx")
    assert split_repository("index.docker.io/acme/app") == ("registry-1.docker.io", "acme/app")


def test_parse_bearer_challenge():
    header = 'Bearer realm="https://auth.docker.io/token",service="registry.docker.io",scope="repository:acme/app:pull"'

    assert parse_bearer_challenge(header) == {
        "realm": "https://auth.docker.io/token",
        "service": "registry.docker.io",
        "scope": "repository:acme/app:pull",
    }
    assert parse_bearer_challenge('Basic realm="x"') is None


def test_image_exists_when_manifest_found():
    fake = FakeRequestsModule([FakeResponse(200)])

    assert _service(fake).image_exists("registry.example.com/acme/app", "42") is True
    assert fake.head_calls[0][0] == "https://registry.example.com/v2/acme/app/manifests/42"


def test_image_missing_when_manifest_not_found():
    fake = FakeRequestsModule([FakeResponse(404)])

    assert _service(fake).image_exists("registry.example.com/acme/app", "42") is False


def test_image_exists_fetches_token_on_bearer_challenge():
    challenge = 'Bearer realm="https://auth.example.com/token",service="registry",scope="repository:acme/app:pull"'
    fake = FakeRequestsModule(
        [FakeResponse(401, headers={"WWW-Authenticate": challenge}), FakeResponse(200)],
        token_response=FakeResponse(200, payload={"token": "secret-token"}),
    )

    assert _service(fake).image_exists("acme/app", "42") is True
    assert fake.get_calls == [
        ("https://auth.example.com/token", {"service": "registry", "scope": "repository:acme/app:pull"})
    ]
    assert fake.head_calls[1][1]["Authorization"] == "Bearer secret-token"


def test_unexpected_status_raises_pipeline_error():
    fake = FakeRequestsModule([FakeResponse(500)])

    with pytest.raises(PipelineError, match="HTTP 500"):
        _service(fake).image_exists("acme/app", "42")


def test_transport_error_raises_pipeline_error():
    class FailingRequests(FakeRequestsModule):
        def head(self, url, headers=None, **kwargs):
            raise self.RequestException("connection refused")

    with pytest.raises(PipelineError, match="connection refused"):
        _service(FailingRequests([])).image_exists("acme/app", "42")


def test_manifest_url_maps_docker_io_to_hub_registry():
    url = _service(FakeRequestsModule([])).manifest_url("docker.io/library/nginx", "1.25")

    assert url == "https://registry-1.docker.io/v2/library/nginx/manifests/1.25"


def test_manifest_url_uses_http_when_insecure_registry_allowed():
    service = RegistryService(
        logger=DummyLogger(),
        allow_insecure_http=True,
        requests_module=FakeRequestsModule([]),
    )

    assert service.manifest_url("localhost:5000/app", "1") == "http://localhost:5000/v2/app/manifests/1"


def test_non_mapping_token_payload_raises_pipeline_error():
    challenge = 'Bearer realm="https://auth.example.com/token",service="registry"'
    fake = FakeRequestsModule(
        [FakeResponse(401, headers={"WWW-Authenticate": challenge})],
        token_response=FakeResponse(200, payload=["not", "a", "mapping"]),
    )

    with pytest.raises(PipelineError, match="unexpected payload"):
        _service(fake).image_exists("acme/app", "42")
