"""Job-backed stages shared by the build and sign pipelines."""

import logging
from enum import Enum

from kubernetes import client

from . import crd, settings
from .errors import StageError
from .hashing import structural_hash
from .k8s import API_ERRORS, get_attr, label_selector
from .templates import create_job_manifest, job_labels

logger = logging.getLogger(__name__)


class Status(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    IN_PROGRESS = "in-progress"
    NOT_NEEDED = "not-needed"


def job_status(job):
    """Map a Job's status onto a stage Status."""
    if get_attr(job, "status", "succeeded", default=0) > 0:
        return Status.COMPLETED
    if get_attr(job, "status", "failed", default=0) > 0:
        return Status.FAILED
    return Status.IN_PROGRESS


def is_owned_by(obj, owner):
    owner_uid = owner["metadata"]["uid"]
    return any(get_attr(ref, "uid") == owner_uid for ref in get_attr(obj, "metadata", "owner_references", default=[]))


class JobManager:
    """Runs one pipeline stage for a kernel version as a Kubernetes Job.

    Subclasses say which recipe of the ModuleLoaderData drives the stage, which
    image it produces and what pod does the work.
    """

    job_type = None

    def __init__(self, batch_v1, registry):
        self.batch_v1 = batch_v1
        self.registry = registry

    def recipe(self, mld):
        raise NotImplementedError

    def output_image(self, mld):
        raise NotImplementedError

    def pod_template(self, mld):
        raise NotImplementedError

    def should_sync(self, mld):
        """A stage is needed when its recipe is declared and its output image is missing."""
        if self.recipe(mld) is None:
            return False
        image = self.output_image(mld)
        exists = self.registry.image_exists(
            image,
            insecure=bool(mld.registry_tls.get("insecure")),
            skip_tls_verify=bool(mld.registry_tls.get("insecureSkipTLSVerify")),
            pull_secret=mld.image_repo_secret,
            namespace=mld.namespace,
        )
        if exists:
            logger.debug(f"Image {image} already exists, {self.job_type} not needed")
        return not exists

    def _create(self, mld, template, template_hash, owner):
        job = create_job_manifest(mld, self.job_type, template, template_hash, crd.module_owner_reference(owner))
        created = self.batch_v1.create_namespaced_job(
            namespace=mld.namespace,
            body=job,
            _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
        )
        logger.info(f"Created {self.job_type} job {created.metadata.name} for kernel {mld.kernel_version}")

    def sync(self, mld, owner):
        """Make sure a Job for the desired template exists and report its status."""
        template = self.pod_template(mld)
        template_hash = structural_hash(template)
        selector = label_selector(job_labels(mld, self.job_type))

        try:
            jobs = self.batch_v1.list_namespaced_job(
                namespace=mld.namespace,
                label_selector=selector,
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            ).items

            if len(jobs) > 1:
                raise StageError(f"found {len(jobs)} {self.job_type} jobs for kernel {mld.kernel_version}, expected at most one")

            if not jobs:
                self._create(mld, template, template_hash, owner)
                return Status.IN_PROGRESS

            job = jobs[0]
            annotations = get_attr(job, "metadata", "annotations", default={})
            if annotations.get(crd.JOB_HASH_ANNOTATION) != template_hash:
                logger.info(f"{self.job_type} job {job.metadata.name} is outdated, recreating it")
                self.batch_v1.delete_namespaced_job(
                    name=job.metadata.name,
                    namespace=mld.namespace,
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
                self._create(mld, template, template_hash, owner)
                return Status.IN_PROGRESS
        except API_ERRORS as e:
            raise StageError(f"could not sync {self.job_type} job for kernel {mld.kernel_version}: {e}") from e

        return job_status(job)

    def garbage_collect(self, name, namespace, owner):
        """Delete the owner's jobs of this type that finished successfully."""
        selector = label_selector({crd.MODULE_NAME_LABEL: name, crd.JOB_TYPE_LABEL: self.job_type})
        deleted = []
        try:
            jobs = self.batch_v1.list_namespaced_job(
                namespace=namespace,
                label_selector=selector,
                _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
            ).items
            for job in jobs:
                if not is_owned_by(job, owner) or job_status(job) != Status.COMPLETED:
                    continue
                self.batch_v1.delete_namespaced_job(
                    name=job.metadata.name,
                    namespace=namespace,
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                    _request_timeout=settings.API_REQUEST_TIMEOUT_SECONDS,
                )
                deleted.append(job.metadata.name)
        except API_ERRORS as e:
            raise StageError(f"could not garbage collect {self.job_type} jobs: {e}") from e

        return deleted
