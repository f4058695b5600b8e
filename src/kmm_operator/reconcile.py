"""Core reconciliation logic."""

import logging

from kubernetes import client

from . import crd, settings
from .daemonset import device_plugin_name, workload_name
from .errors import MappingNotFoundError, ReconcileError
from .imgbuild import Status
from .k8s import API_ERRORS, is_not_found
from .nodes import get_nodes_list_by_selector, node_kernel_version

logger = logging.getLogger(__name__)


class ModuleReconciler:
    """Drives one Module towards its desired state.

    For every kernel version running on the Module's targeted nodes it builds
    and signs the module image when needed, then runs a module-loader
    DaemonSet on the nodes with that kernel. DaemonSets and jobs that no
    longer match a targeted kernel are garbage-collected.

    One call to ``reconcile`` handles a single Module from start to end and
    keeps no state between calls.
    """

    def __init__(
        self,
        core_v1,
        custom_api,
        build_api,
        sign_api,
        daemon_api,
        kernel_api,
        metrics_api,
        status_updater,
    ):
        self.core_v1 = core_v1
        self.custom_api = custom_api
        self.build_api = build_api
        self.sign_api = sign_api
        self.daemon_api = daemon_api
        self.kernel_api = kernel_api
        self.metrics_api = metrics_api
        self.status_updater = status_updater

    def reconcile(self, namespace, name):
        try:
            module = self.get_requested_module(namespace, name)
        except API_ERRORS as e:
            if is_not_found(e):
                logger.info(f"Module {namespace}/{name} deleted")
                return
            raise ReconcileError(f"failed to get the requested module {namespace}/{name}: {e}") from e

        self.set_kmmo_metrics()

        targeted_nodes = get_nodes_list_by_selector(self.core_v1, module)

        mld_mappings, nodes_with_mapping = self.get_relevant_kernel_mappings_and_nodes(module, targeted_nodes)

        for kernel_version, mld in mld_mappings.items():
            if not self.handle_stage(self.build_api, "build", mld):
                logger.info(f"Build for kernel {kernel_version} has not finished successfully yet; "
                            f"skipping signing and driver container for now")
                continue

            if not self.handle_stage(self.sign_api, "sign", mld):
                logger.info(f"Signing for kernel {kernel_version} has not finished successfully yet; "
                            f"skipping driver container for now")
                continue

            self.handle_driver_container(mld)

        logger.info("Handle device plugin")
        self.handle_device_plugin(module)

        existing_ds = self.daemon_api.get_module_daemonsets(name, namespace)

        logger.info("Run garbage collection")
        self.garbage_collect(module, mld_mappings, existing_ds)

        self.status_updater.module_update_status(module, nodes_with_mapping, targeted_nodes, existing_ds)

        logger.info(f"Reconcile loop for module {namespace}/{name} finished successfully")

    def get_requested_module(self, namespace, name):
        return self.custom_api.get_namespaced_custom_object(
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=namespace,
            plural=crd.PLURAL,
            name=name,
            _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
        )

    def set_kmmo_metrics(self):
        """Refresh fleet-wide gauges; a listing failure only costs this refresh."""
        try:
            modules = self.custom_api.list_cluster_custom_object(
                group=crd.GROUP,
                version=crd.VERSION,
                plural=crd.PLURAL,
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            )
        except API_ERRORS as e:
            logger.warning(f"Failed to list modules for metrics: {e}")
            return

        items = modules.get("items", [])
        with_build = 0
        with_sign = 0
        with_device_plugin = 0
        for module in items:
            if module.get("spec", {}).get("devicePlugin"):
                with_device_plugin += 1
            build_capable, sign_capable = crd.is_build_and_sign_capable(module)
            if build_capable:
                with_build += 1
            if sign_capable:
                with_sign += 1

            meta = module["metadata"]
            modprobe = crd.container_spec(module).get("modprobe") or {}
            if modprobe.get("args"):
                args = ",".join(modprobe["args"].get("load") or [])
                self.metrics_api.set_modprobe_args(meta["name"], meta["namespace"], args)
            if modprobe.get("rawArgs"):
                raw_args = ",".join(modprobe["rawArgs"].get("load") or [])
                self.metrics_api.set_modprobe_raw_args(meta["name"], meta["namespace"], raw_args)

        self.metrics_api.set_modules_num(len(items))
        self.metrics_api.set_in_cluster_build_num(with_build)
        self.metrics_api.set_in_cluster_sign_num(with_sign)
        self.metrics_api.set_device_plugin_num(with_device_plugin)

    def get_relevant_kernel_mappings_and_nodes(self, module, targeted_nodes):
        """Resolve one ModuleLoaderData per kernel version among the targeted nodes.

        Returns the kernel version -> ModuleLoaderData map and the nodes that
        resolved to a mapping. Nodes whose kernel has no mapping are skipped.
        """
        mld_mappings = {}
        nodes = []

        for node in targeted_nodes:
            kernel_version = node_kernel_version(node)
            node_name = node.metadata.name

            if kernel_version in mld_mappings:
                nodes.append(node)
                logger.debug(f"Using cached mapping for node {node_name}, kernel {kernel_version}")
                continue

            try:
                mld = self.kernel_api.from_module(module, kernel_version)
            except MappingNotFoundError as e:
                logger.error(f"Failed to get kernel mapping for node {node_name}, kernel {kernel_version}: {e}")
                continue

            logger.debug(f"Found a valid mapping for kernel {kernel_version}: "
                         f"image {mld.container_image}, build {mld.build is not None}")
            mld_mappings[kernel_version] = mld
            nodes.append(node)

        return mld_mappings, nodes

    def handle_stage(self, stage_api, stage, mld):
        """Return True when the stage is not needed or finished successfully."""
        try:
            if not stage_api.should_sync(mld):
                return True
            status = stage_api.sync(mld, mld.owner)
        except ReconcileError as e:
            raise ReconcileError(f"failed to handle {stage} for kernel {mld.kernel_version}: {e}") from e

        if status == Status.COMPLETED:
            return True
        if status == Status.FAILED:
            logger.warning(f"{stage.capitalize()} job for kernel {mld.kernel_version} (image {mld.container_image}) "
                           f"has failed. If the fix is not in the Module, delete the job after the fix "
                           f"in order to restart it")
        return False

    def handle_driver_container(self, mld):
        ds = client.V1DaemonSet(
            metadata=client.V1ObjectMeta(
                name=workload_name(mld.name, mld.kernel_version, mld.module_version),
                namespace=mld.namespace,
            )
        )
        try:
            result = self.daemon_api.create_or_patch(
                ds, lambda obj: self.daemon_api.set_driver_container_as_desired(obj, mld)
            )
        except API_ERRORS as e:
            raise ReconcileError(f"failed to handle driver container for kernel {mld.kernel_version}: {e}") from e

        logger.info(f"Reconciled driver container {ds.metadata.name}: {result}")

    def handle_device_plugin(self, module):
        if not module.get("spec", {}).get("devicePlugin"):
            return

        meta = module["metadata"]
        module_version = crd.container_spec(module).get("version", "")
        ds = client.V1DaemonSet(
            metadata=client.V1ObjectMeta(
                name=device_plugin_name(meta["name"], module_version),
                namespace=meta["namespace"],
            )
        )
        try:
            result = self.daemon_api.create_or_patch(
                ds, lambda obj: self.daemon_api.set_device_plugin_as_desired(obj, module)
            )
        except API_ERRORS as e:
            raise ReconcileError(f"could not handle device plugin: {e}") from e

        logger.info(f"Reconciled device plugin {ds.metadata.name}: {result}")

    def garbage_collect(self, module, mld_mappings, existing_ds):
        """Remove DaemonSets of kernels no longer targeted and finished jobs.

        Each step runs even if an earlier one failed; the collected errors are
        raised together once all three have been attempted.
        """
        meta = module["metadata"]
        valid_kernels = set(mld_mappings)
        steps = [
            ("DaemonSets", lambda: self.daemon_api.garbage_collect(module, existing_ds, valid_kernels)),
            ("build objects", lambda: self.build_api.garbage_collect(meta["name"], meta["namespace"], module)),
            ("sign objects", lambda: self.sign_api.garbage_collect(meta["name"], meta["namespace"], module)),
        ]

        errors = []
        for what, collect in steps:
            try:
                deleted = collect()
            except API_ERRORS + (ReconcileError,) as e:
                logger.error(f"Could not garbage collect {what}: {e}")
                errors.append(f"could not garbage collect {what}: {e}")
                continue
            logger.info(f"Garbage-collected {what}: {deleted}")

        if errors:
            raise ReconcileError("; ".join(errors))
