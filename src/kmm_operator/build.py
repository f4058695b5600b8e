"""In-cluster image builds."""

from . import crd
from .imgbuild import JobManager
from .templates import create_build_pod_template


class BuildManager(JobManager):
    job_type = crd.JOB_TYPE_BUILD

    def recipe(self, mld):
        return mld.build

    def output_image(self, mld):
        return mld.build_output_image()

    def pod_template(self, mld):
        return create_build_pod_template(mld)
