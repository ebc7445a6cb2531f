# bringup_deployment.py
# Deployment for one A100 VM running the image-to-3D pipeline demo.
from __future__ import annotations

from bringup import Deployment, Target, plan
from bringup.step_workflows.gpu_vm import AZURE_COMMANDS, gpu_runbook


def deployment():
    return Deployment(
        target=Target(
            resource_group="trellis-rg",
            vm_name="trellis-a100",
            region="eastus",
            size="Standard_NC24ads_A100_v4",
            ssh_key_path="~/.ssh/id_rsa",
            service_port=7860,
        ),
        provider=AZURE_COMMANDS,
        steps=plan(
            gpu_runbook(
                repo_url="https://github.com/microsoft/TRELLIS.git",
                secure_boot="reactive",
            ),
        ),
        cleanup_on_failure=False,
    )
