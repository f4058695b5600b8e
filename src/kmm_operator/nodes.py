"""Node selection and kernel version helpers."""

import logging

from kubernetes.client.rest import ApiException

from . import crd, settings
from .errors import ReconcileError
from .k8s import get_attr, label_selector

logger = logging.getLogger(__name__)


def normalize_kernel_version(kernel_version):
    """Strip the trailing ``+`` build marker some kernels report."""
    kernel_version = kernel_version or ""
    if kernel_version.endswith("+"):
        return kernel_version[:-1]
    return kernel_version


def node_kernel_version(node):
    return normalize_kernel_version(get_attr(node, "status", "node_info", "kernel_version", default=""))


def is_node_schedulable(node):
    for taint in get_attr(node, "spec", "taints", default=[]):
        if get_attr(taint, "effect") == crd.TAINT_NO_SCHEDULE:
            return False
    return True


def get_nodes_list_by_selector(core_v1, module):
    """List schedulable nodes matching the Module's node selector."""
    selector = label_selector(module.get("spec", {}).get("selector"))
    logger.debug(f"Listing nodes with selector '{selector}'")

    try:
        selected = core_v1.list_node(
            label_selector=selector,
            _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
        )
    except ApiException as e:
        logger.error(f"Could not list nodes: {e}")
        raise ReconcileError(f"could not list nodes: {e}") from e

    return [node for node in selected.items if is_node_schedulable(node)]


def kernel_version_label_patch(node):
    """Label patch keeping the node's kernel version label current, or None if already current."""
    kernel_version = node_kernel_version(node)
    labels = get_attr(node, "metadata", "labels", default={})
    if not kernel_version or labels.get(crd.KERNEL_VERSION_LABEL) == kernel_version:
        return None
    return {"metadata": {"labels": {crd.KERNEL_VERSION_LABEL: kernel_version}}}
