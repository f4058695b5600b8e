"""Kubernetes resource templates."""

from kubernetes import client

from . import crd, settings

MODULES_HOST_PATH = "/lib/modules"
FIRMWARE_HOST_PATH = "/lib/firmware"
DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins"


def job_labels(mld, job_type):
    return {
        crd.MODULE_NAME_LABEL: mld.name,
        crd.TARGET_KERNEL_LABEL: mld.kernel_version,
        crd.JOB_TYPE_LABEL: job_type,
    }


def _docker_config_volume(mld):
    """Volume exposing the Module's image pull secret as a docker config, if any."""
    if not mld.image_repo_secret:
        return None, None
    volume = client.V1Volume(
        name="docker-config",
        secret=client.V1SecretVolumeSource(
            secret_name=mld.image_repo_secret["name"],
            items=[client.V1KeyToPath(key=".dockerconfigjson", path="config.json")],
        ),
    )
    return volume, client.V1VolumeMount(name="docker-config", mount_path="/kaniko/.docker", read_only=True)


def create_build_pod_template(mld):
    """Create kaniko pod template building the Module image for one kernel."""
    build = mld.build or {}
    destination = mld.build_output_image()

    args = [
        "--dockerfile=/workspace/Dockerfile",
        "--context=dir:///workspace",
        f"--destination={destination}",
        f"--build-arg=KERNEL_VERSION={mld.kernel_version}",
        f"--build-arg=KERNEL_FULL_VERSION={mld.kernel_version}",
        f"--build-arg=MOD_NAME={mld.name}",
        f"--build-arg=MOD_NAMESPACE={mld.namespace}",
    ]
    for build_arg in build.get("buildArgs") or []:
        args.append(f"--build-arg={build_arg['name']}={build_arg.get('value', '')}")
    if mld.registry_tls.get("insecure"):
        args.append("--insecure")
    if mld.registry_tls.get("insecureSkipTLSVerify"):
        args.append("--skip-tls-verify")
    base_tls = build.get("baseImageRegistryTLS") or {}
    if base_tls.get("insecure"):
        args.append("--insecure-pull")
    if base_tls.get("insecureSkipTLSVerify"):
        args.append("--skip-tls-verify-pull")

    volumes = [
        client.V1Volume(
            name="dockerfile",
            config_map=client.V1ConfigMapVolumeSource(
                name=build["dockerfileConfigMap"]["name"],
                items=[client.V1KeyToPath(key="dockerfile", path="Dockerfile")],
            ),
        )
    ]
    volume_mounts = [client.V1VolumeMount(name="dockerfile", mount_path="/workspace", read_only=True)]

    for secret in build.get("secrets") or []:
        volumes.append(client.V1Volume(
            name=f"secret-{secret['name']}",
            secret=client.V1SecretVolumeSource(secret_name=secret["name"]),
        ))
        volume_mounts.append(client.V1VolumeMount(
            name=f"secret-{secret['name']}",
            mount_path=f"/run/secrets/{secret['name']}",
            read_only=True,
        ))

    config_volume, config_mount = _docker_config_volume(mld)
    if config_volume:
        volumes.append(config_volume)
        volume_mounts.append(config_mount)

    return client.V1PodTemplateSpec(
        spec=client.V1PodSpec(
            restart_policy="Never",
            node_selector=mld.selector or None,
            containers=[
                client.V1Container(
                    name="kaniko",
                    image=settings.KANIKO_IMAGE,
                    args=args,
                    volume_mounts=volume_mounts,
                )
            ],
            volumes=volumes,
        ),
    )


def create_sign_pod_template(mld):
    """Create pod template signing the kernel modules inside the unsigned image."""
    sign = mld.sign or {}

    args = [
        "-signedimage", mld.container_image,
        "-unsignedimage", mld.unsigned_image(),
        "-key", "/signingkey/key.priv",
        "-cert", "/signingcert/public.der",
    ]
    files_to_sign = sign.get("filesToSign") or []
    if files_to_sign:
        args += ["-filestosign", ":".join(files_to_sign)]
    if mld.registry_tls.get("insecure"):
        args.append("--insecure")
    if mld.registry_tls.get("insecureSkipTLSVerify"):
        args.append("--skip-tls-verify")

    volumes = [
        client.V1Volume(
            name="key",
            secret=client.V1SecretVolumeSource(
                secret_name=sign["keySecret"]["name"],
                items=[client.V1KeyToPath(key="key", path="key.priv")],
            ),
        ),
        client.V1Volume(
            name="cert",
            secret=client.V1SecretVolumeSource(
                secret_name=sign["certSecret"]["name"],
                items=[client.V1KeyToPath(key="cert", path="public.der")],
            ),
        ),
    ]
    volume_mounts = [
        client.V1VolumeMount(name="key", mount_path="/signingkey", read_only=True),
        client.V1VolumeMount(name="cert", mount_path="/signingcert", read_only=True),
    ]
    if mld.image_repo_secret:
        args += ["-pullsecret", "/docker_config/config.json"]
        volumes.append(client.V1Volume(
            name="docker-config",
            secret=client.V1SecretVolumeSource(
                secret_name=mld.image_repo_secret["name"],
                items=[client.V1KeyToPath(key=".dockerconfigjson", path="config.json")],
            ),
        ))
        volume_mounts.append(client.V1VolumeMount(name="docker-config", mount_path="/docker_config", read_only=True))

    return client.V1PodTemplateSpec(
        spec=client.V1PodSpec(
            restart_policy="Never",
            node_selector=mld.selector or None,
            containers=[
                client.V1Container(
                    name="signimage",
                    image=settings.SIGN_IMAGE,
                    args=args,
                    volume_mounts=volume_mounts,
                )
            ],
            volumes=volumes,
        ),
    )


def create_job_manifest(mld, job_type, pod_template, template_hash, owner_ref):
    """Create build or sign Job manifest owned by the Module."""
    labels = job_labels(mld, job_type)
    pod_template.metadata = client.V1ObjectMeta(labels=labels)
    return client.V1Job(
        metadata=client.V1ObjectMeta(
            generate_name=f"{mld.name}-{job_type}-",
            namespace=mld.namespace,
            labels=labels,
            annotations={crd.JOB_HASH_ANNOTATION: template_hash},
            owner_references=[owner_ref],
        ),
        spec=client.V1JobSpec(
            backoff_limit=0,
            completions=1,
            template=pod_template,
        ),
    )


def modprobe_commands(modprobe):
    """Return the (load, unload) commands for a modprobe spec."""
    raw_args = modprobe.get("rawArgs") or {}
    if raw_args:
        return ["modprobe"] + list(raw_args.get("load") or []), ["modprobe"] + list(raw_args.get("unload") or [])

    module_name = modprobe.get("moduleName")
    if not module_name:
        raise ValueError("modprobe.moduleName or modprobe.rawArgs must be set")
    args = modprobe.get("args") or {}
    common = ["-d", modprobe.get("dirName") or "/opt"]
    load = ["modprobe", "-v"] + common + list(args.get("load") or []) + [module_name]
    load += list(modprobe.get("parameters") or [])
    unload = ["modprobe", "-rv"] + common + list(args.get("unload") or []) + [module_name]
    return load, unload


def module_loader_labels(mld):
    return {
        crd.MODULE_NAME_LABEL: mld.name,
        crd.TARGET_KERNEL_LABEL: mld.kernel_version,
        crd.MODULE_VERSION_LABEL: mld.module_version or "none",
        crd.ROLE_LABEL: crd.ROLE_MODULE_LOADER,
    }


def create_module_loader_spec(mld):
    """Create DaemonSet spec loading the module on every node running mld's kernel."""
    labels = module_loader_labels(mld)
    load, unload = modprobe_commands(mld.modprobe)
    node_selector = dict(mld.selector)
    node_selector[crd.KERNEL_VERSION_LABEL] = mld.kernel_version

    volume_mounts = [client.V1VolumeMount(name="node-lib-modules", mount_path=MODULES_HOST_PATH, read_only=True)]
    volumes = [
        client.V1Volume(
            name="node-lib-modules",
            host_path=client.V1HostPathVolumeSource(path=MODULES_HOST_PATH, type="Directory"),
        )
    ]
    if mld.modprobe.get("firmwarePath"):
        volume_mounts.append(client.V1VolumeMount(name="node-lib-firmware", mount_path=FIRMWARE_HOST_PATH))
        volumes.append(client.V1Volume(
            name="node-lib-firmware",
            host_path=client.V1HostPathVolumeSource(path=FIRMWARE_HOST_PATH, type="DirectoryOrCreate"),
        ))

    pull_secrets = None
    if mld.image_repo_secret:
        pull_secrets = [client.V1LocalObjectReference(name=mld.image_repo_secret["name"])]

    return client.V1DaemonSetSpec(
        selector=client.V1LabelSelector(match_labels=labels),
        template=client.V1PodTemplateSpec(
            metadata=client.V1ObjectMeta(labels=labels),
            spec=client.V1PodSpec(
                node_selector=node_selector,
                service_account_name=mld.service_account_name,
                image_pull_secrets=pull_secrets,
                priority_class_name="system-node-critical",
                containers=[
                    client.V1Container(
                        name="module-loader",
                        image=mld.container_image,
                        image_pull_policy=mld.image_pull_policy,
                        command=["sleep", "infinity"],
                        lifecycle=client.V1Lifecycle(
                            post_start=client.V1LifecycleHandler(_exec=client.V1ExecAction(command=load)),
                            pre_stop=client.V1LifecycleHandler(_exec=client.V1ExecAction(command=unload)),
                        ),
                        security_context=client.V1SecurityContext(
                            allow_privilege_escalation=False,
                            capabilities=client.V1Capabilities(add=["SYS_MODULE"]),
                            run_as_user=0,
                            se_linux_options=client.V1SELinuxOptions(type="spc_t"),
                        ),
                        volume_mounts=volume_mounts,
                    )
                ],
                volumes=volumes,
            ),
        ),
    )


def device_plugin_labels(module):
    return {
        crd.MODULE_NAME_LABEL: module["metadata"]["name"],
        crd.ROLE_LABEL: crd.ROLE_DEVICE_PLUGIN,
    }


def create_device_plugin_spec(module):
    """Create DaemonSet spec running the Module's device plugin on every selected node."""
    spec = module["spec"]
    device_plugin = spec["devicePlugin"]
    container = device_plugin.get("container", {})
    labels = device_plugin_labels(module)

    volume_mounts = [client.V1VolumeMount(name="kubelet-device-plugins", mount_path=DEVICE_PLUGIN_PATH)]
    volume_mounts += [
        client.V1VolumeMount(name=m["name"], mount_path=m["mountPath"], read_only=m.get("readOnly"))
        for m in container.get("volumeMounts") or []
    ]
    volumes = [
        client.V1Volume(
            name="kubelet-device-plugins",
            host_path=client.V1HostPathVolumeSource(path=DEVICE_PLUGIN_PATH, type="Directory"),
        )
    ]
    # User-declared volumes are passed through in their wire form
    volumes += list(device_plugin.get("volumes") or [])

    pull_secrets = None
    if spec.get("imageRepoSecret"):
        pull_secrets = [client.V1LocalObjectReference(name=spec["imageRepoSecret"]["name"])]

    return client.V1DaemonSetSpec(
        selector=client.V1LabelSelector(match_labels=labels),
        template=client.V1PodTemplateSpec(
            metadata=client.V1ObjectMeta(labels=labels),
            spec=client.V1PodSpec(
                node_selector=spec.get("selector") or None,
                service_account_name=device_plugin.get("serviceAccountName"),
                image_pull_secrets=pull_secrets,
                priority_class_name="system-node-critical",
                containers=[
                    client.V1Container(
                        name="device-plugin",
                        image=container["image"],
                        image_pull_policy=container.get("imagePullPolicy"),
                        args=container.get("args"),
                        env=[client.V1EnvVar(name=e["name"], value=e.get("value")) for e in container.get("env") or []] or None,
                        security_context=client.V1SecurityContext(privileged=True),
                        volume_mounts=volume_mounts,
                    )
                ],
                volumes=volumes,
            ),
        ),
    )
