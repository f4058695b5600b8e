"""Main operator entrypoint using Kopf."""

import logging
from datetime import datetime, timezone

import kopf
from kubernetes.client.rest import ApiException
from prometheus_client import start_http_server

from . import crd, settings
from .build import BuildManager
from .daemonset import DaemonSetCreator
from .filter import find_modules_for_node, node_predicate
from .k8s import get_clients
from .kernel import ModuleLoaderDataFactory
from .metrics import Metrics
from .nodes import kernel_version_label_patch
from .reconcile import ModuleReconciler
from .registry import ImageRegistry
from .sign import SignManager
from .statusupdater import ModuleStatusUpdater

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_reconciler = None


def new_reconciler(clients, metrics=None, registry=None):
    """Wire a ModuleReconciler with its collaborators."""
    registry = registry or ImageRegistry(core_v1=clients.core_v1)
    return ModuleReconciler(
        core_v1=clients.core_v1,
        custom_api=clients.custom_api,
        build_api=BuildManager(clients.batch_v1, registry),
        sign_api=SignManager(clients.batch_v1, registry),
        daemon_api=DaemonSetCreator(clients.apps_v1),
        kernel_api=ModuleLoaderDataFactory(),
        metrics_api=metrics or Metrics(),
        status_updater=ModuleStatusUpdater(clients.custom_api),
    )


def get_reconciler():
    global _reconciler
    if _reconciler is None:
        _reconciler = new_reconciler(get_clients())
    return _reconciler


@kopf.on.startup()
def configure(**kwargs):
    """Load cluster credentials and start the metrics endpoint."""
    get_reconciler()
    start_http_server(settings.METRICS_PORT)
    logger.info(f"Metrics server started on port {settings.METRICS_PORT}")


def run_reconcile(namespace, name):
    try:
        get_reconciler().reconcile(namespace, name)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        raise kopf.PermanentError(str(e))
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=settings.RETRY_DELAY_SECONDS)


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.PLURAL)
def module_handler(name, namespace, **kwargs):
    """Handle Module create/update events."""
    logger.info(f"Handling Module {name} in namespace {namespace}")
    run_reconcile(namespace, name)


@kopf.timer(crd.GROUP, crd.VERSION, crd.PLURAL, interval=settings.RECONCILE_INTERVAL_SECONDS)
def module_timer(name, namespace, **kwargs):
    """Periodic reconciliation timer."""
    logger.debug(f"Timer reconciliation for Module {name}")
    run_reconcile(namespace, name)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.PLURAL, optional=True)
def module_delete(name, namespace, **kwargs):
    """Handle Module deletion."""
    # Owner references take care of DaemonSets and jobs
    logger.info(f"Module {name} deleted in namespace {namespace}")


def trigger_modules(node_name, labels):
    """Annotate every Module selecting the node so that it gets reconciled."""
    custom_api = get_clients().custom_api
    stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    for namespace, name in find_modules_for_node(custom_api, labels):
        logger.debug(f"Node {node_name} changed, requeueing Module {namespace}/{name}")
        try:
            custom_api.patch_namespaced_custom_object(
                group=crd.GROUP,
                version=crd.VERSION,
                namespace=namespace,
                plural=crd.PLURAL,
                name=name,
                body={"metadata": {"annotations": {crd.NODE_EVENT_ANNOTATION: stamp}}},
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            )
        except ApiException as e:
            if e.status != 404:
                raise


@kopf.on.event("", "v1", "nodes")
def node_event(event, body, name, labels, **kwargs):
    """Keep the kernel version label current and requeue Modules affected by a node change."""
    if event["type"] == "DELETED":
        trigger_modules(name, labels)
        return

    patch = kernel_version_label_patch(body)
    if patch:
        get_clients().core_v1.patch_node(
            name=name,
            body=patch,
            _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
        )
        logger.info(f"Labeled node {name} with kernel version {patch['metadata']['labels'][crd.KERNEL_VERSION_LABEL]}")


@kopf.on.update("", "v1", "nodes", when=lambda old, new, **_: node_predicate(old, new))
@kopf.on.create("", "v1", "nodes")
def node_changed(name, labels, **kwargs):
    trigger_modules(name, labels)


if __name__ == "__main__":
    kopf.run()
