"""Resolution of a Module's kernel mappings for one kernel version."""

import logging
import re
from string import Template

from . import crd
from .api import ModuleLoaderData
from .errors import MappingNotFoundError

logger = logging.getLogger(__name__)

_NUMERIC_PREFIX = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-(\d+))?")


def version_key(kernel_version):
    """Numeric components of a kernel version, e.g. ``5.14.0-284.el9`` -> (5, 14, 0, 284)."""
    match = _NUMERIC_PREFIX.match(kernel_version or "")
    if not match:
        raise ValueError(f"not a kernel version: {kernel_version!r}")
    return tuple(int(part) if part is not None else 0 for part in match.groups())


def _in_range(kernel_version, version_range):
    try:
        key = version_key(kernel_version)
        lower = version_range.get("min")
        upper = version_range.get("max")
        if lower and key < version_key(lower):
            return False
        if upper and key > version_key(upper):
            return False
    except ValueError as e:
        logger.debug(f"Skipping range {version_range}: {e}")
        return False
    return True


def mapping_matches(mapping, kernel_version):
    if mapping.get("literal"):
        return mapping["literal"] == kernel_version
    if mapping.get("regexp"):
        return re.match(mapping["regexp"], kernel_version) is not None
    if mapping.get("kernelVersionRange"):
        return _in_range(kernel_version, mapping["kernelVersionRange"])
    return False


def _merge(base, override):
    if base is None and override is None:
        return None
    merged = dict(base or {})
    merged.update(override or {})
    return merged


def template_variables(kernel_version, module_name, namespace):
    x, y, z = (kernel_version.split("-", 1)[0].split(".") + ["", "", ""])[:3]
    return {
        "KERNEL_FULL_VERSION": kernel_version,
        # Kept for Modules written against the older variable name
        "KERNEL_VERSION": kernel_version,
        "KERNEL_XYZ": ".".join(p for p in (x, y, z) if p),
        "KERNEL_X": x,
        "KERNEL_Y": y,
        "KERNEL_Z": z,
        "MOD_NAME": module_name,
        "MOD_NAMESPACE": namespace,
    }


def substitute(value, variables):
    if not value:
        return value
    return Template(value).safe_substitute(variables)


class ModuleLoaderDataFactory:
    """Builds ModuleLoaderData from a Module and a normalized kernel version."""

    def find_mapping(self, mappings, kernel_version):
        for mapping in mappings:
            try:
                if mapping_matches(mapping, kernel_version):
                    return mapping
            except re.error as e:
                raise MappingNotFoundError(f"invalid regexp {mapping.get('regexp')!r}: {e}") from e
        raise MappingNotFoundError(f"no kernel mapping matches kernel {kernel_version}")

    def from_module(self, module, kernel_version):
        meta = module["metadata"]
        spec = module.get("spec", {})
        module_loader = spec.get("moduleLoader", {})
        container = crd.container_spec(module)

        mapping = self.find_mapping(container.get("kernelMappings") or [], kernel_version)

        variables = template_variables(kernel_version, meta["name"], meta["namespace"])
        image = substitute(mapping.get("containerImage") or container.get("image"), variables)
        if not image:
            raise MappingNotFoundError(
                f"no container image for kernel {kernel_version} in module {meta['name']}"
            )

        build = _merge(container.get("build"), mapping.get("build"))
        if build and build.get("buildArgs"):
            build["buildArgs"] = [
                {"name": arg["name"], "value": substitute(arg.get("value", ""), variables)}
                for arg in build["buildArgs"]
            ]

        sign = _merge(container.get("sign"), mapping.get("sign"))
        if sign and sign.get("unsignedImage"):
            sign["unsignedImage"] = substitute(sign["unsignedImage"], variables)

        return ModuleLoaderData(
            name=meta["name"],
            namespace=meta["namespace"],
            kernel_version=kernel_version,
            container_image=image,
            module_version=container.get("version", ""),
            build=build,
            sign=sign,
            modprobe=container.get("modprobe") or {},
            selector=spec.get("selector") or {},
            image_pull_policy=container.get("imagePullPolicy"),
            service_account_name=module_loader.get("serviceAccountName"),
            registry_tls=mapping.get("registryTLS") or container.get("registryTLS") or {},
            image_repo_secret=spec.get("imageRepoSecret"),
            owner=module,
        )
