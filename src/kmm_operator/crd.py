"""CRD schema constants and helpers."""

# CRD Group, Version, and Kind
GROUP = "kmm.sigs.x-k8s.io"
VERSION = "v1beta1"
PLURAL = "modules"
KIND = "Module"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

# Labels set on objects owned by a Module
LABEL_PREFIX = "kmm.node.kubernetes.io"
MODULE_NAME_LABEL = f"{LABEL_PREFIX}/module.name"
TARGET_KERNEL_LABEL = f"{LABEL_PREFIX}/target-kernel"
MODULE_VERSION_LABEL = f"{LABEL_PREFIX}/module-version"
JOB_TYPE_LABEL = f"{LABEL_PREFIX}/job.type"
ROLE_LABEL = f"{LABEL_PREFIX}/role"
ROLE_DEVICE_PLUGIN = "device-plugin"
ROLE_MODULE_LOADER = "module-loader"

# Node label carrying the normalized kernel version
KERNEL_VERSION_LABEL = f"{LABEL_PREFIX}/kernel-version.full"

# Annotations
JOB_HASH_ANNOTATION = f"{LABEL_PREFIX}/last-hash"
NODE_EVENT_ANNOTATION = f"{GROUP}/node-event"

# Job types
JOB_TYPE_BUILD = "build"
JOB_TYPE_SIGN = "sign"

# Taint effect that excludes a node from targeting
TAINT_NO_SCHEDULE = "NoSchedule"


def module_owner_reference(module):
    """Owner reference pointing back at a Module body."""
    meta = module["metadata"]
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "name": meta["name"],
        "uid": meta["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def container_spec(module):
    """Return spec.moduleLoader.container of a Module (empty dict if unset)."""
    return module.get("spec", {}).get("moduleLoader", {}).get("container", {}) or {}


def is_build_and_sign_capable(module):
    """Whether a Module declares a build and/or a sign recipe anywhere."""
    container = container_spec(module)
    build_capable = container.get("build") is not None
    sign_capable = container.get("sign") is not None
    if build_capable and sign_capable:
        return True, True

    for mapping in container.get("kernelMappings") or []:
        if mapping.get("build") is not None:
            build_capable = True
        if mapping.get("sign") is not None:
            sign_capable = True

    return build_capable, sign_capable
