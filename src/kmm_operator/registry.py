"""Container registry lookups over the Docker Registry HTTP API v2."""

import base64
import json
import logging
import re

import requests

from . import settings
from .errors import RegistryError
from .k8s import API_ERRORS

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
DOCKER_HUB_ALIASES = ("https://index.docker.io/v1/", "index.docker.io", "docker.io")

MANIFEST_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_image(image):
    """Split an image reference into (registry, repository, reference)."""
    name, reference = image, "latest"
    if "@" in image:
        name, reference = image.split("@", 1)
    else:
        last = image.rsplit("/", 1)[-1]
        if ":" in last:
            name, reference = image.rsplit(":", 1)

    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, rest
    else:
        registry, repository = DOCKER_HUB, name
        if "/" not in repository:
            repository = f"library/{repository}"

    if registry == "docker.io":
        registry = DOCKER_HUB
    return registry, repository, reference


def _auth_keys(registry):
    keys = [registry, f"https://{registry}", f"http://{registry}", f"https://{registry}/v1/"]
    if registry == DOCKER_HUB:
        keys += list(DOCKER_HUB_ALIASES)
    return keys


def docker_config_credentials(docker_config, registry):
    """Return (username, password) for registry from a parsed docker config, or None."""
    auths = docker_config.get("auths") or {}
    for key in _auth_keys(registry):
        entry = auths.get(key)
        if not entry:
            continue
        if entry.get("username"):
            return entry["username"], entry.get("password", "")
        if entry.get("auth"):
            username, _, password = base64.b64decode(entry["auth"]).decode("utf-8").partition(":")
            return username, password
    return None


class ImageRegistry:
    """Answers whether an image already exists in its registry.

    Credentials come from the Module's image pull secret, read through the
    core API when one is declared.
    """

    def __init__(self, session=None, timeout=None, core_v1=None):
        self.session = session or requests.Session()
        self.timeout = timeout or settings.REGISTRY_TIMEOUT_SECONDS
        self.core_v1 = core_v1

    def credentials(self, namespace, secret_name, registry):
        try:
            secret = self.core_v1.read_namespaced_secret(
                name=secret_name,
                namespace=namespace,
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            )
        except API_ERRORS as e:
            raise RegistryError(f"could not read pull secret {namespace}/{secret_name}: {e}") from e

        data = (secret.data or {}).get(".dockerconfigjson")
        if not data:
            logger.warning(f"Pull secret {namespace}/{secret_name} has no .dockerconfigjson key")
            return None
        try:
            return docker_config_credentials(json.loads(base64.b64decode(data)), registry)
        except ValueError as e:
            raise RegistryError(f"malformed docker config in pull secret {namespace}/{secret_name}: {e}") from e

    def _token(self, challenge, verify, auth):
        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise RegistryError(f"malformed auth challenge: {challenge}")
        response = self.session.get(realm, params=params, auth=auth, timeout=self.timeout, verify=verify)
        if response.status_code != 200:
            raise RegistryError(f"token request to {realm} returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryError(f"malformed token response from {realm}: {e}") from e
        return body.get("token") or body.get("access_token")

    def image_exists(self, image, insecure=False, skip_tls_verify=False, pull_secret=None, namespace=None):
        registry, repository, reference = parse_image(image)
        scheme = "http" if insecure else "https"
        url = f"{scheme}://{registry}/v2/{repository}/manifests/{reference}"
        headers = {"Accept": MANIFEST_TYPES}
        verify = not skip_tls_verify

        auth = None
        if pull_secret and self.core_v1 is not None:
            auth = self.credentials(namespace, pull_secret["name"], registry)

        authenticated = False
        try:
            response = self.session.head(url, headers=headers, timeout=self.timeout, verify=verify)
            challenge = response.headers.get("WWW-Authenticate", "")
            if response.status_code == 401 and challenge.lower().startswith("bearer"):
                token = self._token(challenge, verify, auth)
                headers["Authorization"] = f"Bearer {token}"
                response = self.session.head(url, headers=headers, timeout=self.timeout, verify=verify)
                authenticated = True
            elif response.status_code == 401 and challenge.lower().startswith("basic") and auth:
                response = self.session.head(url, headers=headers, auth=auth, timeout=self.timeout, verify=verify)
                authenticated = True
        except requests.RequestException as e:
            raise RegistryError(f"could not reach registry for image {image}: {e}") from e

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        if authenticated and response.status_code in (401, 403):
            # Registries deny access to repositories that do not exist yet
            logger.warning(f"Registry denied access to {image} ({response.status_code}), treating it as missing")
            return False

        logger.error(f"Unexpected registry response {response.status_code} for {url}")
        raise RegistryError(f"registry returned {response.status_code} for image {image}")
