import unittest
from types import SimpleNamespace
from unittest.mock import Mock

from kubernetes.client.rest import ApiException

from kmm_operator import crd
from kmm_operator.errors import ReconcileError
from kmm_operator.nodes import (
    get_nodes_list_by_selector,
    is_node_schedulable,
    kernel_version_label_patch,
    node_kernel_version,
    normalize_kernel_version,
)

from fakes import make_module, make_node


class TestNormalizeKernelVersion(unittest.TestCase):
    def test_strips_trailing_plus(self):
        self.assertEqual(normalize_kernel_version("5.14.0+"), "5.14.0")

    def test_leaves_plain_version(self):
        self.assertEqual(normalize_kernel_version("5.14.0-284.el9.x86_64"), "5.14.0-284.el9.x86_64")

    def test_only_one_marker_is_stripped(self):
        self.assertEqual(normalize_kernel_version("5.14.0++"), "5.14.0+")

    def test_node_kernel_version_from_wire_form(self):
        body = {"status": {"nodeInfo": {"kernelVersion": "6.1.0+"}}}
        self.assertEqual(node_kernel_version(body), "6.1.0")


class TestSchedulable(unittest.TestCase):
    def test_no_taints(self):
        self.assertTrue(is_node_schedulable(make_node("n1", "5.14.0")))

    def test_no_schedule_taint(self):
        node = make_node("n1", "5.14.0", taints=[("node.kubernetes.io/unschedulable", "NoSchedule")])
        self.assertFalse(is_node_schedulable(node))

    def test_other_effects_are_schedulable(self):
        node = make_node("n1", "5.14.0", taints=[("gpu", "PreferNoSchedule"), ("x", "NoExecute")])
        self.assertTrue(is_node_schedulable(node))


class TestGetNodesListBySelector(unittest.TestCase):
    def test_filters_tainted_nodes(self):
        core_v1 = Mock()
        core_v1.list_node.return_value = SimpleNamespace(items=[
            make_node("n1", "5.14.0"),
            make_node("n2", "5.14.0", taints=[("maintenance", "NoSchedule")]),
            make_node("n3", "5.15.0"),
        ])

        nodes = get_nodes_list_by_selector(core_v1, make_module())

        self.assertEqual([n.metadata.name for n in nodes], ["n1", "n3"])
        self.assertEqual(core_v1.list_node.call_args.kwargs["label_selector"], "feature.kmm=enabled")

    def test_listing_failure_is_fatal(self):
        core_v1 = Mock()
        core_v1.list_node.side_effect = ApiException(status=500, reason="boom")

        with self.assertRaises(ReconcileError):
            get_nodes_list_by_selector(core_v1, make_module())


class TestKernelVersionLabel(unittest.TestCase):
    def test_patch_when_label_missing(self):
        patch = kernel_version_label_patch(make_node("n1", "5.14.0+"))
        self.assertEqual(patch, {"metadata": {"labels": {crd.KERNEL_VERSION_LABEL: "5.14.0"}}})

    def test_no_patch_when_current(self):
        node = make_node("n1", "5.14.0", labels={crd.KERNEL_VERSION_LABEL: "5.14.0"})
        self.assertIsNone(kernel_version_label_patch(node))


if __name__ == "__main__":
    unittest.main()
