"""Module status reporting."""

import logging

from kubernetes.client.rest import ApiException

from . import crd, settings
from .daemonset import is_device_plugin
from .errors import ReconcileError
from .k8s import get_attr

logger = logging.getLogger(__name__)


class ModuleStatusUpdater:
    def __init__(self, custom_api):
        self.custom_api = custom_api

    def module_update_status(self, module, nodes_with_mapping, targeted_nodes, existing_ds):
        """Write node counts and DaemonSet availability into the Module's status."""
        loader_available = 0
        device_plugin_available = 0
        for ds in existing_ds:
            available = get_attr(ds, "status", "number_available", default=0)
            if is_device_plugin(ds):
                device_plugin_available += available
            else:
                loader_available += available

        status = {
            "moduleLoader": {
                "nodesMatchingSelectorNumber": len(targeted_nodes),
                "desiredNumber": len(nodes_with_mapping),
                "availableNumber": loader_available,
            }
        }
        if module.get("spec", {}).get("devicePlugin"):
            status["devicePlugin"] = {
                "nodesMatchingSelectorNumber": len(targeted_nodes),
                "desiredNumber": len(nodes_with_mapping),
                "availableNumber": device_plugin_available,
            }

        meta = module["metadata"]
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=crd.GROUP,
                version=crd.VERSION,
                namespace=meta["namespace"],
                plural=crd.PLURAL,
                name=meta["name"],
                body={"status": status},
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            )
        except ApiException as e:
            raise ReconcileError(f"could not update status of module {meta['namespace']}/{meta['name']}: {e}") from e

        logger.debug(f"Updated status of module {meta['name']}: {status}")
        return status
