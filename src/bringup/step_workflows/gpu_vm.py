# step_workflows/gpu_vm.py
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from ..classify import rule
from ..config import ProviderCommands
from ..dsl import provider, remote, retry, set_env, step, verify
from ..model import Step
from ..verify import ArtifactsPresent, CommandSucceeds, ResultSize, ServiceHealthy


# ---------------------------------------------------------------------
# Provider templates (Azure CLI)
# ---------------------------------------------------------------------

AZURE_COMMANDS = ProviderCommands(
    create=(
        "az vm create --resource-group {resource_group} --name {vm_name} --location {region} "
        "--size {size} --image {image} --admin-username {admin_user} "
        "--ssh-key-values {ssh_key_path}.pub --public-ip-sku Standard --output json"
    ),
    start=(
        "az vm start -g {resource_group} -n {vm_name} && "
        "az vm show -d -g {resource_group} -n {vm_name} --query '{{publicIpAddress: publicIps}}' -o json"
    ),
    deallocate="az vm deallocate -g {resource_group} -n {vm_name}",
    delete="az group delete --name {resource_group} --yes",
    open_port="az vm open-port -g {resource_group} -n {vm_name} --port {service_port} --priority 1010",
)

DISABLE_SECURE_BOOT = (
    "az vm deallocate -g {resource_group} -n {vm_name} && "
    "az vm update -g {resource_group} -n {vm_name} --enable-secure-boot false && "
    "az vm start -g {resource_group} -n {vm_name}"
)


def count_outputs(pattern: str, key: str = "size") -> str:
    """
    Shell snippet that prints one JSON line, key -> number of files matching
    `pattern`. It holds no braces, so it survives template rendering.
    """
    return (
        f'python -c "import glob, json; '
        f"print(json.dumps(dict({key}=len(glob.glob('{pattern}')))))\""
    )


CONDA = ". $HOME/miniconda3/etc/profile.d/conda.sh && conda activate $CONDA_ENV"
PROFILE = "$HOME/.bringup_env"

BUILD_SCRIPT = """set -e
test -d "$APP_DIR/.git" || git clone --recurse-submodules "$REPO_URL" "$APP_DIR"
echo "BRINGUP-MARKER: cloned"
cd "$APP_DIR"
. $HOME/miniconda3/etc/profile.d/conda.sh
conda env list | grep -q "^$CONDA_ENV " || conda create -y -n "$CONDA_ENV" python="$PYTHON_VERSION"
conda activate "$CONDA_ENV"
echo "BRINGUP-MARKER: env-ready"
$BUILD_COMMAND
echo "BRINGUP-MARKER: built"
if [ "${{ATTN_BACKEND:-flash-attn}}" = "flash-attn" ]; then python -c "import flash_attn"; fi
"""

SECURE_BOOT_POLICIES = ("reactive", "preemptive")


def gpu_runbook(
    *,
    repo_url: str,
    build_command: str = "bash setup.sh --basic --xformers --flash-attn --diffoctreerast --spconv --mipgaussian --kaolin --nvdiffrast",
    app_dir: str = "app",
    conda_env: str = "app",
    python_version: str = "3.10",
    driver_package: str = "nvidia-driver-535",
    cuda_version: str = "12-2",
    runtime_pin: str = "torch==2.4.0 torchvision==0.19.0",
    single_input_command: str = "python example.py",
    single_input_artifacts: Sequence[str] = ("$APP_DIR/sample.glb", "$APP_DIR/sample.ply"),
    multi_input_command: str = "python example_multi_image.py && " + count_outputs("sample_multi*"),
    service_command: str = "python app.py",
    secure_boot: str = "reactive",
    deprovision: bool = False,
    cleanup_operation: str = "deallocate",
    extra_env: Optional[Dict[str, str]] = None,
) -> List[Step]:
    """
    Steps that bring one GPU VM from nothing to a verified, served pipeline.

    secure_boot="reactive" keeps disable-secure-boot as a remediation that
    only runs when the driver is rejected; "preemptive" runs it up front.
    """
    if secure_boot not in SECURE_BOOT_POLICIES:
        raise ValueError(f"secure_boot must be one of {SECURE_BOOT_POLICIES}, got {secure_boot!r}")
    if cleanup_operation not in ("deallocate", "delete"):
        raise ValueError(f"cleanup_operation must be 'deallocate' or 'delete', got {cleanup_operation!r}")

    env = {
        "APP_DIR": app_dir,
        "REPO_URL": repo_url,
        "CONDA_ENV": conda_env,
        "PYTHON_VERSION": python_version,
        "BUILD_COMMAND": build_command,
        "NVIDIA_DRIVER": driver_package,
        "CUDA_VERSION": cuda_version,
        "RUNTIME_PIN": runtime_pin,
        "DEBIAN_FRONTEND": "noninteractive",
    }
    env.update(extra_env or {})
    preemptive = secure_boot == "preemptive"
    apt = retry(4, backoff=15)

    steps = [
        step(
            "provision-vm",
            provider("create"),
            description="GPU VM exists, is running and has a public IP",
            phase="provisioning",
            retry=retry(3, backoff=30),
            timeout=1200,
        ),
        step(
            "disable-secure-boot",
            verify(
                DISABLE_SECURE_BOOT,
                CommandSucceeds("true", timeout=900, interval=15),
                where="local",
            ),
            description="Secure boot is off so the unsigned driver module can load",
            needs=["provision-vm"],
            phase="configuring",
            retry=retry(3, backoff=30),
            timeout=1200,
            remediation_only=not preemptive,
        ),
        step(
            "install-gpu-driver",
            remote("sudo apt-get update && sudo apt-get install -y $NVIDIA_DRIVER && sudo modprobe nvidia"),
            description="GPU driver package installed and its kernel module loads",
            needs=["disable-secure-boot"] if preemptive else ["provision-vm"],
            phase="installing",
            retry=apt,
            timeout=1800,
            rules=[rule(r"could not insert 'nvidia'", "environment", "secure_boot_blocked")],
            remediate={"secure_boot_blocked": "disable-secure-boot"},
            env=env,
        ),
        step(
            "reboot-and-verify-driver",
            verify(
                "sudo systemd-run --on-active=5 /bin/systemctl reboot",
                CommandSucceeds("nvidia-smi", timeout=900, interval=15, expect="NVIDIA-SMI", settle=60),
            ),
            description="after a reboot nvidia-smi lists the GPU",
            needs=["install-gpu-driver"],
            phase="installing",
            timeout=1200,
            env=env,
        ),
        step(
            "install-cuda-toolkit",
            remote(
                "wget -q -O /tmp/cuda-keyring.deb "
                "https://developer.download.nvidia.com/compute/cuda/repos/ubuntu2204/x86_64/cuda-keyring_1.1-1_all.deb && "
                "sudo dpkg -i /tmp/cuda-keyring.deb && sudo apt-get update && "
                "sudo apt-get install -y cuda-toolkit-$CUDA_VERSION"
            ),
            description="CUDA toolkit matching the driver is installed",
            needs=["reboot-and-verify-driver"],
            phase="installing",
            retry=apt,
            timeout=3600,
            env=env,
        ),
        step(
            "install-system-packages",
            remote("sudo apt-get install -y git build-essential ninja-build libgl1 libglib2.0-0"),
            description="build tools and runtime libraries are installed",
            needs=["provision-vm"],
            phase="installing",
            retry=apt,
            env=env,
        ),
        step(
            "install-env-manager",
            remote(
                "test -x $HOME/miniconda3/bin/conda || "
                "(wget -q -O /tmp/miniconda.sh https://repo.anaconda.com/miniconda/Miniconda3-latest-Linux-x86_64.sh && "
                "bash /tmp/miniconda.sh -b -p $HOME/miniconda3)"
            ),
            description="conda is installed under $HOME/miniconda3",
            needs=["install-system-packages"],
            phase="installing",
            retry=retry(3, backoff=15),
            env=env,
        ),
        step(
            "clone-and-build",
            remote(BUILD_SCRIPT),
            description="source is cloned and its native extensions build and import",
            needs=["install-cuda-toolkit", "install-env-manager"],
            phase="building",
            idempotent=False,
            timeout=5400,
            rules=[rule(r"requires torch==|torch.*version mismatch", "environment", "runtime_version_mismatch")],
            remediate={
                "abi_mismatch": "use-alternate-attention",
                "runtime_version_mismatch": "pin-runtime-dependency",
            },
            env=env,
        ),
        step(
            "use-alternate-attention",
            set_env(profile=PROFILE, ATTN_BACKEND="xformers"),
            description="attention backend switched to xformers",
            needs=["provision-vm"],
            phase="building",
            remediation_only=True,
        ),
        step(
            "pin-runtime-dependency",
            remote(f"{CONDA} && pip install --force-reinstall $RUNTIME_PIN"),
            description="runtime dependency pinned to the supported version",
            needs=["install-env-manager"],
            phase="building",
            retry=retry(3, backoff=15),
            timeout=1800,
            remediation_only=True,
            env=env,
        ),
        step(
            "configure-runtime-env",
            set_env(profile=PROFILE, SPCONV_ALGO="native"),
            description="runtime environment variables are exported for later shells",
            needs=["clone-and-build"],
            phase="building",
        ),
        step(
            "verify-single-input",
            verify(
                f". {PROFILE} && {CONDA} && cd \"$APP_DIR\" && {single_input_command}",
                ArtifactsPresent(tuple(single_input_artifacts)),
            ),
            description="a single input produces a non-empty output file",
            needs=["configure-runtime-env"],
            phase="verifying",
            timeout=1800,
            env=env,
        ),
        step(
            "verify-multi-input",
            verify(
                f". {PROFILE} && {CONDA} && cd \"$APP_DIR\" && {multi_input_command}",
                ResultSize("size", 1),
            ),
            description="multiple inputs produce a result with at least one element",
            needs=["verify-single-input"],
            phase="verifying",
            timeout=1800,
            env=env,
        ),
        step(
            "open-service-port",
            provider("open_port"),
            description="the service port is reachable from outside",
            needs=["verify-multi-input"],
            phase="verifying",
            retry=retry(3, backoff=15),
        ),
        step(
            "verify-service",
            verify(
                f". {PROFILE} && {CONDA} && cd \"$APP_DIR\" && {service_command}",
                ServiceHealthy(timeout=600, interval=10),
                background=True,
            ),
            description="the service answers HTTP on its port",
            needs=["open-service-port"],
            phase="verifying",
            timeout=900,
            env=dict(env, GRADIO_SERVER_NAME="0.0.0.0"),
        ),
        step(
            f"cleanup-{cleanup_operation}",
            provider(cleanup_operation),
            description=f"the VM is {cleanup_operation}d",
            retry=retry(3, backoff=30),
            timeout=1800,
            cleanup=True,
        ),
    ]

    if deprovision:
        steps.append(
            step(
                "deprovision",
                provider("deallocate"),
                description="the VM is deallocated once verified",
                needs=["verify-service"],
                retry=retry(3, backoff=30),
                timeout=1800,
            )
        )
    return steps
