"""Per-kernel resolved Module configuration."""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class ModuleLoaderData:
    """Everything needed to build, sign and load a Module for one kernel version.

    Created by the kernel resolver for every distinct normalized kernel version
    found among a Module's targeted nodes; never persisted.
    """

    name: str
    namespace: str
    kernel_version: str
    container_image: str
    module_version: str = ""
    build: Optional[Dict] = None
    sign: Optional[Dict] = None
    modprobe: Dict = field(default_factory=dict)
    selector: Dict[str, str] = field(default_factory=dict)
    image_pull_policy: Optional[str] = None
    service_account_name: Optional[str] = None
    registry_tls: Dict = field(default_factory=dict)
    image_repo_secret: Optional[Dict] = None
    owner: Optional[Dict] = field(default=None, repr=False)

    def intermediate_image_name(self):
        """Unsigned image the build pushes to when a sign stage follows."""
        repo, sep, tag = self.container_image.rpartition(":")
        if not sep or "/" in tag:
            repo, tag = self.container_image, "latest"
        return f"{repo}:{self.namespace}_{self.name}_kmm_unsigned_{tag}"

    def unsigned_image(self):
        """Image the sign stage reads from."""
        if self.sign and self.sign.get("unsignedImage"):
            return self.sign["unsignedImage"]
        return self.intermediate_image_name()

    def build_output_image(self):
        if self.sign is not None:
            return self.unsigned_image()
        return self.container_image
