"""Prometheus metrics describing the Modules in the cluster."""

from prometheus_client import Gauge


class Metrics:
    """Fleet-wide gauges, refreshed on every reconciliation pass."""

    def __init__(self, registry=None):
        kwargs = {"registry": registry} if registry is not None else {}
        self.modules = Gauge(
            "kmm_module_num",
            "Number of existing KMM Modules",
            **kwargs,
        )
        self.in_cluster_build = Gauge(
            "kmm_in_cluster_build_num",
            "Number of existing KMM Modules with in-cluster build defined",
            **kwargs,
        )
        self.in_cluster_sign = Gauge(
            "kmm_in_cluster_sign_num",
            "Number of existing KMM Modules with in-cluster sign defined",
            **kwargs,
        )
        self.device_plugin = Gauge(
            "kmm_device_plugin_num",
            "Number of existing KMM Modules with device plugin defined",
            **kwargs,
        )
        self.modprobe_args = Gauge(
            "kmm_modprobe_args",
            "Modprobe load arguments configured per Module",
            ["name", "namespace", "modprobe_args"],
            **kwargs,
        )
        self.modprobe_raw_args = Gauge(
            "kmm_modprobe_raw_args",
            "Modprobe raw load arguments configured per Module",
            ["name", "namespace", "modprobe_raw_args"],
            **kwargs,
        )

    def set_modules_num(self, value):
        self.modules.set(value)

    def set_in_cluster_build_num(self, value):
        self.in_cluster_build.set(value)

    def set_in_cluster_sign_num(self, value):
        self.in_cluster_sign.set(value)

    def set_device_plugin_num(self, value):
        self.device_plugin.set(value)

    def set_modprobe_args(self, name, namespace, args):
        self.modprobe_args.labels(name=name, namespace=namespace, modprobe_args=args).set(1)

    def set_modprobe_raw_args(self, name, namespace, args):
        self.modprobe_raw_args.labels(name=name, namespace=namespace, modprobe_raw_args=args).set(1)
