"""Container registry lookups for deploypipe."""

import re
from typing import Dict, Optional, Tuple

import requests

from deploypipe.errors import PipelineError

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", DOCKER_HUB_REGISTRY})
MANIFEST_ACCEPT = ", ".join(
    (
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    )
)
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def split_repository(image_repository: str) -> Tuple[str, str]:
    """Splits an image repository into ``(registry_host, repository_path)``."""
    first, _, rest = image_repository.partition("/")
    if rest and first in DOCKER_HUB_ALIASES:
        image_repository = rest
        first, _, rest = rest.partition("/")
    elif rest and ("." in first or ":" in first or first == "localhost"):
        return first, rest

    if not rest:
        return DOCKER_HUB_REGISTRY, f"library/{image_repository}"
    return DOCKER_HUB_REGISTRY, image_repository


def parse_bearer_challenge(header: str) -> Optional[Dict[str, str]]:
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return dict(_CHALLENGE_PARAM_RE.findall(params))


class RegistryService:
    """Checks image presence through the registry HTTP API v2."""

    def __init__(
        self,
        logger,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        allow_insecure_http: bool = False,
        requests_module=requests,
    ):
        self.logger = logger
        self.username = username
        self.password = password
        self.timeout = timeout
        self.scheme = "http" if allow_insecure_http else "https"
        self.requests = requests_module

    @property
    def _auth(self):
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def manifest_url(self, image_repository: str, tag: str) -> str:
        registry, repository = split_repository(image_repository)
        return f"{self.scheme}://{registry}/v2/{repository}/manifests/{tag}"

    def image_exists(self, image_repository: str, tag: str) -> bool:
        url = self.manifest_url(image_repository, tag)
        headers = {"Accept": MANIFEST_ACCEPT}
        self.logger.info("Checking registry for %s:%s", image_repository, tag)

        try:
            response = self.requests.head(url, headers=headers, auth=self._auth, timeout=self.timeout)
            if response.status_code == 401:
                token = self._fetch_token(response.headers.get("WWW-Authenticate", ""))
                if token:
                    headers["Authorization"] = f"Bearer {token}"
                    response = self.requests.head(url, headers=headers, timeout=self.timeout)
        except self.requests.RequestException as exc:
            raise PipelineError(f"Registry lookup failed for {image_repository}:{tag}: {exc}") from exc

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise PipelineError(
            f"Registry lookup for {image_repository}:{tag} returned HTTP {response.status_code}."
        )

    def _fetch_token(self, challenge_header: str) -> Optional[str]:
        challenge = parse_bearer_challenge(challenge_header)
        if not challenge or "realm" not in challenge:
            return None

        params = {key: value for key, value in challenge.items() if key in ("service", "scope")}
        response = self.requests.get(
            challenge["realm"],
            params=params,
            auth=self._auth,
            timeout=self.timeout,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise PipelineError(f"Registry token endpoint returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PipelineError("Registry token endpoint returned an unexpected payload.")
        return payload.get("token") or payload.get("access_token")
