"""Mapping node events onto the Modules they affect."""

import logging

from . import crd, settings
from .k8s import get_attr
from .nodes import node_kernel_version

logger = logging.getLogger(__name__)


def selector_matches(selector, labels):
    return all(labels.get(key) == value for key, value in (selector or {}).items())


def find_modules_for_node(custom_api, node_labels):
    """Return (namespace, name) of every Module whose selector matches the node labels."""
    modules = custom_api.list_cluster_custom_object(
        group=crd.GROUP,
        version=crd.VERSION,
        plural=crd.PLURAL,
        _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
    )
    matched = []
    for module in modules.get("items", []):
        if selector_matches(module.get("spec", {}).get("selector"), node_labels or {}):
            meta = module["metadata"]
            matched.append((meta["namespace"], meta["name"]))
    return matched


def _taints(node):
    return sorted(
        (get_attr(taint, "key", default=""), get_attr(taint, "value", default=""), get_attr(taint, "effect", default=""))
        for taint in get_attr(node, "spec", "taints", default=[])
    )


def node_predicate(old, new):
    """Whether a node change may change which Modules target it, or how.

    Covers label changes (selector membership and the kernel version label),
    the reported kernel version and taints (schedulability).
    """
    if old is None or new is None:
        return True

    if get_attr(old, "metadata", "labels", default={}) != get_attr(new, "metadata", "labels", default={}):
        return True
    if node_kernel_version(old) != node_kernel_version(new):
        return True
    return _taints(old) != _taints(new)
