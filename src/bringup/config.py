# config.py
from __future__ import annotations

import re
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .dag import StepRegistry
from .errors import ConfigurationError
from .model import Step


# -------------------- Schemas --------------------

class Target(BaseModel):
    """The compute resource a Run drives."""
    model_config = ConfigDict(extra="forbid")

    provider: str = "azure"
    resource_group: str
    vm_name: str
    region: str
    size: str = "Standard_NC24ads_A100_v4"
    image: str = "Canonical:0001-com-ubuntu-server-jammy:22_04-lts-gen2:latest"
    admin_user: str = "azureuser"
    ssh_key_path: str = "~/.ssh/id_rsa"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    service_port: int = Field(default=7860, ge=1, le=65535)
    public_ip: Optional[str] = None


class ProviderCommands(BaseModel):
    """
    Command templates for the resource provider. Placeholders are filled
    from the target, the handle and the run env (str.format syntax).
    """
    model_config = ConfigDict(extra="forbid")

    create: Optional[str] = None
    start: Optional[str] = None
    deallocate: Optional[str] = None
    delete: Optional[str] = None
    open_port: Optional[str] = None
    ip_field: str = "publicIpAddress"


@dataclass
class Deployment:
    """
    Everything one Run needs: target, provider templates, steps.

    Canonical way to define it: a python file with
        def deployment() -> Deployment
    or
        DEPLOYMENT = Deployment(...)
    """
    target: Target
    steps: List[Step]
    provider: ProviderCommands = field(default_factory=ProviderCommands)
    env: Dict[str, str] = field(default_factory=dict)
    run_id: Optional[str] = None
    cleanup_on_failure: bool = False
    source: Optional[Path] = None

    def registry(self) -> StepRegistry:
        reg = StepRegistry(self.steps)
        reg.validate()
        return reg

    def resolved_run_id(self) -> str:
        if self.run_id:
            return self.run_id
        raw = f"{self.target.resource_group}-{self.target.vm_name}"
        return re.sub(r"[^a-z0-9_.-]+", "-", raw.lower()).strip("-")


# ----------------------------------------------------------------------
# Deployment loading (local python file)
# ----------------------------------------------------------------------

def load_deployment(path: str | Path) -> Deployment:
    """
    Load a deployment from a python file path.

    The file must define either:
      - deployment() -> Deployment
      - DEPLOYMENT = Deployment(...)
    """
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigurationError(f"Deployment file not found: {cfg_path}")
    if cfg_path.suffix != ".py":
        raise ConfigurationError(f"Deployment must be a .py file, got: {cfg_path.name}")

    module_name = f"bringup_deployment_{cfg_path.stem}"
    try:
        globals_dict = runpy.run_path(str(cfg_path), run_name=module_name)
        if "deployment" in globals_dict and callable(globals_dict["deployment"]):
            dep = globals_dict["deployment"]()
        else:
            dep = globals_dict.get("DEPLOYMENT")
    except ConfigurationError:
        raise
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid deployment in {cfg_path.name}",
            details={"errors": "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())},
        ) from e
    except Exception as e:
        raise ConfigurationError(f"Could not load {cfg_path.name}: {type(e).__name__}: {e}") from e

    if not isinstance(dep, Deployment):
        raise ConfigurationError(
            "Deployment file must define deployment() -> Deployment or DEPLOYMENT = Deployment(...)",
            details={"file": str(cfg_path)},
        )

    dep.source = cfg_path
    # fail early on a bad DAG
    dep.registry()
    return dep
