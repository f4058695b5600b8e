"""In-cluster module signing."""

from . import crd
from .imgbuild import JobManager
from .templates import create_sign_pod_template


class SignManager(JobManager):
    job_type = crd.JOB_TYPE_SIGN

    def recipe(self, mld):
        return mld.sign

    def output_image(self, mld):
        return mld.container_image

    def pod_template(self, mld):
        return create_sign_pod_template(mld)
