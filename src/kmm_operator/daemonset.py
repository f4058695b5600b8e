"""Module-loader and device-plugin DaemonSets."""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import crd, settings
from .errors import ReconcileError
from .hashing import structural_hash
from .k8s import API_ERRORS, get_attr, is_conflict, is_not_found, label_selector, to_dict
from .templates import (
    create_device_plugin_spec,
    create_module_loader_spec,
    device_plugin_labels,
    module_loader_labels,
)

logger = logging.getLogger(__name__)

OPERATION_CREATED = "created"
OPERATION_UPDATED = "updated"
OPERATION_UNCHANGED = "unchanged"

MAX_CONFLICT_RETRIES = 5


def workload_name(module_name, kernel_version, module_version):
    """Name of the module-loader DaemonSet for one kernel and module version."""
    digest = structural_hash({"kernelVersion": kernel_version, "moduleVersion": module_version})
    return f"{module_name}-{digest}"


def device_plugin_name(module_name, module_version):
    digest = structural_hash({"moduleVersion": module_version})
    return f"{module_name}-device-plugin-{digest}"


def is_contained(desired, current):
    """True when every field set in ``desired`` has the same value in ``current``.

    Fields the API server adds (defaults, status, bookkeeping metadata) are
    ignored, so a stored object that already matches needs no write.
    """
    if isinstance(desired, dict):
        if not isinstance(current, dict):
            return False
        return all(key in current and is_contained(value, current[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(current, list) or len(desired) != len(current):
            return False
        return all(is_contained(d, c) for d, c in zip(desired, current))
    return desired == current


def is_device_plugin(ds):
    labels = get_attr(ds, "metadata", "labels", default={})
    return labels.get(crd.ROLE_LABEL) == crd.ROLE_DEVICE_PLUGIN


class DaemonSetCreator:
    """Renders, upserts, lists and garbage-collects a Module's DaemonSets."""

    def __init__(self, apps_v1):
        self.apps_v1 = apps_v1

    def set_driver_container_as_desired(self, ds, mld):
        if not mld.container_image:
            raise ReconcileError(f"no container image for kernel {mld.kernel_version}")
        ds.metadata.labels = module_loader_labels(mld)
        ds.metadata.owner_references = [crd.module_owner_reference(mld.owner)]
        ds.spec = create_module_loader_spec(mld)

    def set_device_plugin_as_desired(self, ds, module):
        if not module.get("spec", {}).get("devicePlugin"):
            raise ReconcileError("device plugin is not declared")
        ds.metadata.labels = device_plugin_labels(module)
        ds.metadata.owner_references = [crd.module_owner_reference(module)]
        ds.spec = create_device_plugin_spec(module)

    def create_or_patch(self, ds, mutate):
        """Create ``ds`` or replace the stored one with what ``mutate`` renders.

        ``ds`` carries only name and namespace on entry. The write is skipped
        when the stored object already contains the rendered fields. Otherwise
        the stored object is replaced as a whole, so fields and list entries
        dropped from the rendering go away, conditioned on the last-read
        resourceVersion.
        """
        name, namespace = ds.metadata.name, ds.metadata.namespace
        mutate(ds)
        desired = to_dict(ds)

        for _ in range(MAX_CONFLICT_RETRIES):
            try:
                current = self.apps_v1.read_namespaced_daemon_set(
                    name=name,
                    namespace=namespace,
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
            except ApiException as e:
                if not is_not_found(e):
                    raise
                self.apps_v1.create_namespaced_daemon_set(
                    namespace=namespace,
                    body=ds,
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
                return OPERATION_CREATED

            current = to_dict(current)
            if is_contained(desired, current):
                return OPERATION_UNCHANGED

            ds.metadata.resource_version = current["metadata"].get("resourceVersion")
            try:
                self.apps_v1.replace_namespaced_daemon_set(
                    name=name,
                    namespace=namespace,
                    body=ds,
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
                return OPERATION_UPDATED
            except ApiException as e:
                if not is_conflict(e):
                    raise
                logger.debug(f"Conflict replacing DaemonSet {namespace}/{name}, retrying")

        raise ReconcileError(f"gave up replacing DaemonSet {namespace}/{name} after {MAX_CONFLICT_RETRIES} conflicts")

    def get_module_daemonsets(self, name, namespace):
        try:
            return self.apps_v1.list_namespaced_daemon_set(
                namespace=namespace,
                label_selector=label_selector({crd.MODULE_NAME_LABEL: name}),
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            ).items
        except API_ERRORS as e:
            raise ReconcileError(f"could not list DaemonSets for module {namespace}/{name}: {e}") from e

    def garbage_collect(self, module, existing_ds, valid_kernels):
        """Delete module-loader DaemonSets whose kernel is no longer targeted."""
        deleted = []
        for ds in existing_ds:
            if is_device_plugin(ds):
                continue
            name = get_attr(ds, "metadata", "name")
            kernel_version = get_attr(ds, "metadata", "labels", default={}).get(crd.TARGET_KERNEL_LABEL)
            if kernel_version in valid_kernels:
                continue
            try:
                self.apps_v1.delete_namespaced_daemon_set(
                    name=name,
                    namespace=get_attr(ds, "metadata", "namespace"),
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
            except API_ERRORS as e:
                if is_not_found(e):
                    continue
                raise ReconcileError(f"could not delete DaemonSet {name}: {e}") from e
            deleted.append(name)
        return deleted
