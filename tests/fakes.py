"""Builders and in-memory API fakes shared by the tests."""

import copy
from types import SimpleNamespace

from kubernetes.client.rest import ApiException

from kmm_operator.k8s import to_dict


def make_node(name, kernel_version, labels=None, taints=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}),
        spec=SimpleNamespace(taints=[SimpleNamespace(key=k, value=None, effect=e) for k, e in taints or []]),
        status=SimpleNamespace(node_info=SimpleNamespace(kernel_version=kernel_version)),
    )


def make_module(name="kmm-ci", namespace="default", version="1.0", mappings=None, **container):
    container_spec = {
        "image": "quay.io/org/kmm-ci:${KERNEL_FULL_VERSION}",
        "version": version,
        "modprobe": {"moduleName": "kmm_ci_a"},
        "kernelMappings": mappings if mappings is not None else [{"regexp": "^.+$"}],
    }
    container_spec.update(container)
    return {
        "apiVersion": "kmm.sigs.x-k8s.io/v1beta1",
        "kind": "Module",
        "metadata": {"name": name, "namespace": namespace, "uid": f"{name}-uid"},
        "spec": {
            "selector": {"feature.kmm": "enabled"},
            "moduleLoader": {"container": container_spec},
        },
    }


def not_found():
    return ApiException(status=404, reason="Not Found")


def _matches(labels, selector):
    if not selector:
        return True
    wanted = dict(pair.split("=", 1) for pair in selector.split(","))
    return all(labels.get(k) == v for k, v in wanted.items())


class FakeAppsApi:
    """Stores DaemonSets in their wire form, honoring resourceVersion on replace."""

    def __init__(self):
        self.objects = {}
        self.created = []
        self.replaced = []
        self.deleted = []
        self._version = 0

    def _bump(self, obj):
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)

    def read_namespaced_daemon_set(self, name, namespace, **kwargs):
        if (namespace, name) not in self.objects:
            raise not_found()
        return copy.deepcopy(self.objects[(namespace, name)])

    def create_namespaced_daemon_set(self, namespace, body, **kwargs):
        obj = to_dict(body)
        obj["status"] = {"numberAvailable": 0}
        self._bump(obj)
        self.objects[(namespace, obj["metadata"]["name"])] = obj
        self.created.append(obj["metadata"]["name"])
        return copy.deepcopy(obj)

    def replace_namespaced_daemon_set(self, name, namespace, body, **kwargs):
        stored = self.objects[(namespace, name)]
        obj = to_dict(body)
        expected = obj["metadata"].get("resourceVersion")
        if expected is not None and expected != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        obj["status"] = stored["status"]
        self._bump(obj)
        self.objects[(namespace, name)] = obj
        self.replaced.append(name)
        return copy.deepcopy(obj)

    def list_namespaced_daemon_set(self, namespace, label_selector=None, **kwargs):
        items = [
            copy.deepcopy(obj)
            for (ns, _), obj in self.objects.items()
            if ns == namespace and _matches(obj["metadata"].get("labels", {}), label_selector)
        ]
        return SimpleNamespace(items=items)

    def delete_namespaced_daemon_set(self, name, namespace, **kwargs):
        if self.objects.pop((namespace, name), None) is None:
            raise not_found()
        self.deleted.append(name)
