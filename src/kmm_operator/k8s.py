"""Kubernetes client helpers."""

import logging
from collections import namedtuple
from collections.abc import Mapping

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

Clients = namedtuple("Clients", ["core_v1", "apps_v1", "batch_v1", "custom_api"])

# Errors an API call can fail with: error responses and transport failures
API_ERRORS = (ApiException, urllib3.exceptions.HTTPError)

# Initialize clients
_clients = None
_serializer = client.ApiClient()


def init_clients():
    """Initialize Kubernetes clients."""
    global _clients

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")

    _clients = Clients(
        core_v1=client.CoreV1Api(),
        apps_v1=client.AppsV1Api(),
        batch_v1=client.BatchV1Api(),
        custom_api=client.CustomObjectsApi(),
    )
    return _clients


def get_clients():
    """Get initialized Kubernetes clients."""
    if _clients is None:
        init_clients()
    return _clients


def is_not_found(error):
    return isinstance(error, ApiException) and error.status == 404


def is_conflict(error):
    return isinstance(error, ApiException) and error.status == 409


def to_dict(obj):
    """Serialize a client model (or plain dict) into its API wire form."""
    return _serializer.sanitize_for_serialization(obj)


def label_selector(labels):
    """Render a label map as a selector string, e.g. ``a=b,c=d``."""
    return ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def get_attr(obj, *path, default=None):
    """Walk an API object, returning default on a gap.

    Accepts client models (snake_case attributes) as well as wire-form dicts
    such as kopf bodies (camelCase keys); path is always given in snake_case.
    """
    current = obj
    for key in path:
        if current is None:
            return default
        if isinstance(current, Mapping):
            current = current.get(_camel(key))
        else:
            current = getattr(current, key, None)
    return default if current is None else current
