import unittest
from types import SimpleNamespace
from unittest.mock import Mock

from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from kmm_operator import crd
from kmm_operator.build import BuildManager
from kmm_operator.errors import StageError
from kmm_operator.hashing import structural_hash
from kmm_operator.imgbuild import Status, job_status
from kmm_operator.kernel import ModuleLoaderDataFactory
from kmm_operator.sign import SignManager

from fakes import make_module


def make_job(name, succeeded=0, failed=0, template_hash=None, owner_uid="kmm-ci-uid"):
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            annotations={crd.JOB_HASH_ANNOTATION: template_hash} if template_hash else {},
            owner_references=[SimpleNamespace(uid=owner_uid)],
        ),
        status=SimpleNamespace(succeeded=succeeded, failed=failed),
    )


class TestJobStatus(unittest.TestCase):
    def test_mapping(self):
        self.assertEqual(job_status(make_job("j", succeeded=1)), Status.COMPLETED)
        self.assertEqual(job_status(make_job("j", failed=1)), Status.FAILED)
        self.assertEqual(job_status(make_job("j")), Status.IN_PROGRESS)

    def test_missing_counters(self):
        job = SimpleNamespace(status=SimpleNamespace(succeeded=None, failed=None))
        self.assertEqual(job_status(job), Status.IN_PROGRESS)


class TestBuildManager(unittest.TestCase):
    def setUp(self):
        self.module = make_module(build={"dockerfileConfigMap": {"name": "dockerfile"}})
        self.mld = ModuleLoaderDataFactory().from_module(self.module, "5.14.0")
        self.batch_v1 = Mock()
        self.registry = Mock()
        self.manager = BuildManager(self.batch_v1, self.registry)
        self.template_hash = structural_hash(self.manager.pod_template(self.mld))

    def test_should_sync_without_recipe(self):
        mld = ModuleLoaderDataFactory().from_module(make_module(), "5.14.0")
        self.assertFalse(self.manager.should_sync(mld))
        self.registry.image_exists.assert_not_called()

    def test_should_sync_when_image_missing(self):
        self.registry.image_exists.return_value = False
        self.assertTrue(self.manager.should_sync(self.mld))
        self.registry.image_exists.assert_called_once_with(
            "quay.io/org/kmm-ci:5.14.0", insecure=False, skip_tls_verify=False, pull_secret=None, namespace="default"
        )

    def test_should_sync_passes_pull_secret(self):
        module = make_module(build={"dockerfileConfigMap": {"name": "dockerfile"}})
        module["spec"]["imageRepoSecret"] = {"name": "pull-secret"}
        mld = ModuleLoaderDataFactory().from_module(module, "5.14.0")
        self.registry.image_exists.return_value = False

        self.manager.should_sync(mld)

        self.assertEqual(self.registry.image_exists.call_args.kwargs["pull_secret"], {"name": "pull-secret"})

    def test_should_not_sync_when_image_exists(self):
        self.registry.image_exists.return_value = True
        self.assertFalse(self.manager.should_sync(self.mld))

    def test_sync_creates_missing_job(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(items=[])

        status = self.manager.sync(self.mld, self.module)

        self.assertEqual(status, Status.IN_PROGRESS)
        job = self.batch_v1.create_namespaced_job.call_args.kwargs["body"]
        self.assertEqual(job.metadata.generate_name, "kmm-ci-build-")
        self.assertEqual(job.metadata.labels[crd.JOB_TYPE_LABEL], "build")
        self.assertEqual(job.metadata.labels[crd.TARGET_KERNEL_LABEL], "5.14.0")
        self.assertEqual(job.metadata.annotations[crd.JOB_HASH_ANNOTATION], self.template_hash)
        self.assertEqual(job.metadata.owner_references[0]["uid"], "kmm-ci-uid")
        self.assertIn("--destination=quay.io/org/kmm-ci:5.14.0", job.spec.template.spec.containers[0].args)

    def test_sync_reports_existing_job_status(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(
            items=[make_job("kmm-ci-build-abc", succeeded=1, template_hash=self.template_hash)]
        )

        self.assertEqual(self.manager.sync(self.mld, self.module), Status.COMPLETED)
        self.batch_v1.create_namespaced_job.assert_not_called()

    def test_sync_reports_failed_job(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(
            items=[make_job("kmm-ci-build-abc", failed=1, template_hash=self.template_hash)]
        )

        self.assertEqual(self.manager.sync(self.mld, self.module), Status.FAILED)

    def test_sync_recreates_outdated_job(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(
            items=[make_job("kmm-ci-build-abc", failed=1, template_hash="stale")]
        )

        self.assertEqual(self.manager.sync(self.mld, self.module), Status.IN_PROGRESS)
        self.assertEqual(self.batch_v1.delete_namespaced_job.call_args.kwargs["name"], "kmm-ci-build-abc")
        self.batch_v1.create_namespaced_job.assert_called_once()

    def test_sync_rejects_duplicate_jobs(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(
            items=[make_job("a", template_hash=self.template_hash), make_job("b", template_hash=self.template_hash)]
        )

        with self.assertRaises(StageError):
            self.manager.sync(self.mld, self.module)

    def test_sync_api_failure(self):
        self.batch_v1.list_namespaced_job.side_effect = ApiException(status=500, reason="boom")

        with self.assertRaises(StageError):
            self.manager.sync(self.mld, self.module)

    def test_garbage_collect_deletes_only_succeeded_owned_jobs(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(items=[
            make_job("done", succeeded=1),
            make_job("running"),
            make_job("failed", failed=1),
            make_job("foreign", succeeded=1, owner_uid="other"),
        ])

        deleted = self.manager.garbage_collect("kmm-ci", "default", self.module)

        self.assertEqual(deleted, ["done"])
        self.assertEqual(self.batch_v1.delete_namespaced_job.call_count, 1)
        selector = self.batch_v1.list_namespaced_job.call_args.kwargs["label_selector"]
        self.assertIn(f"{crd.JOB_TYPE_LABEL}=build", selector)

    def test_garbage_collect_transport_error(self):
        self.batch_v1.list_namespaced_job.side_effect = MaxRetryError(None, "/apis/batch/v1", "connection refused")

        with self.assertRaises(StageError):
            self.manager.garbage_collect("kmm-ci", "default", self.module)


class TestSignManager(unittest.TestCase):
    def setUp(self):
        self.module = make_module(
            build={"dockerfileConfigMap": {"name": "dockerfile"}},
            sign={"keySecret": {"name": "key"}, "certSecret": {"name": "cert"}, "filesToSign": ["/opt/lib/modules/a.ko"]},
        )
        self.mld = ModuleLoaderDataFactory().from_module(self.module, "5.14.0")
        self.batch_v1 = Mock()
        self.registry = Mock()
        self.manager = SignManager(self.batch_v1, self.registry)

    def test_should_sync_checks_signed_image(self):
        self.registry.image_exists.return_value = False
        self.assertTrue(self.manager.should_sync(self.mld))
        self.assertEqual(self.registry.image_exists.call_args.args[0], "quay.io/org/kmm-ci:5.14.0")

    def test_sign_job_reads_unsigned_image(self):
        self.batch_v1.list_namespaced_job.return_value = SimpleNamespace(items=[])

        self.manager.sync(self.mld, self.module)

        job = self.batch_v1.create_namespaced_job.call_args.kwargs["body"]
        args = job.spec.template.spec.containers[0].args
        self.assertEqual(job.metadata.labels[crd.JOB_TYPE_LABEL], "sign")
        self.assertEqual(args[args.index("-unsignedimage") + 1], self.mld.unsigned_image())
        self.assertEqual(args[args.index("-filestosign") + 1], "/opt/lib/modules/a.ko")


if __name__ == "__main__":
    unittest.main()
