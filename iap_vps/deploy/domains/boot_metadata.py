"""Instance metadata that bootstraps the gateway VM."""
import logging
from pathlib import Path
from string import Template
from typing import Dict

import yaml

from ...secrets.domains.models import PLACEHOLDER_VALUES
from .models import DeploySettings

logger = logging.getLogger(__name__)

BOOT_DIR = "/opt/iap-vps"
BOOT_VENV = f"{BOOT_DIR}/venv"
BOOT_PROGRAM = f"{BOOT_DIR}/startup.py"

PROGRAM_ATTRIBUTE = "iap-vps-startup"
CONFIG_ATTRIBUTE = "iap-vps-boot-config"

VENV_READY_MARKER = ".venv-ready"

# Packages the boot program imports
BOOT_REQUIREMENTS = ["google-cloud-secret-manager>=2.16", "requests>=2.28", "PyYAML>=6.0"]

STARTUP_STUB = Template("""#!/bin/bash
# Generated by iap-vps. Fetches the boot program from instance metadata and runs it.
set -euo pipefail

ATTRIBUTES="http://metadata.google.internal/computeMetadata/v1/instance/attributes"

mkdir -p ${boot_dir}
chmod 755 ${boot_dir}
curl -sf -H "Metadata-Flavor: Google" "$${ATTRIBUTES}/${program_attribute}" -o ${boot_program}
curl -sf -H "Metadata-Flavor: Google" "$${ATTRIBUTES}/${config_attribute}" -o ${boot_config}

# The marker is only written once pip succeeds; a half-built venv is rebuilt
if [ ! -f ${venv_ready} ]; then
  apt-get update -qq
  apt-get install -y -qq python3-venv
  rm -rf ${boot_venv}
  python3 -m venv ${boot_venv}
  ${boot_venv}/bin/pip install --quiet ${requirements}
  touch ${venv_ready}
fi

exec ${boot_venv}/bin/python ${boot_program} --config ${boot_config} provision
""")


def render_startup_stub(boot_dir: str = BOOT_DIR) -> str:
    boot_venv = f"{boot_dir}/venv"
    return STARTUP_STUB.substitute(
        boot_dir=boot_dir,
        boot_venv=boot_venv,
        venv_ready=f"{boot_dir}/{VENV_READY_MARKER}",
        boot_program=f"{boot_dir}/startup.py",
        boot_config=f"{boot_dir}/boot.yml",
        program_attribute=PROGRAM_ATTRIBUTE,
        config_attribute=CONFIG_ATTRIBUTE,
        requirements=" ".join(f"'{req}'" for req in BOOT_REQUIREMENTS),
    )


def render_boot_config(settings: DeploySettings) -> str:
    """Serialize the gateway settings the boot program reads on the VM."""
    gateway = settings.gateway
    data = {
        "user": gateway.user,
        "package": gateway.package,
        "binary": gateway.binary,
        "port": gateway.port,
        "node_major": gateway.node_major,
        "service_name": gateway.service_name,
        "args": list(gateway.args),
        "placeholder_values": list(PLACEHOLDER_VALUES),
        "python": f"{BOOT_VENV}/bin/python",
        "program": BOOT_PROGRAM,
    }
    return yaml.safe_dump(data, sort_keys=False)


def boot_program_source() -> str:
    """Source of the boot program shipped inside this package."""
    return (Path(__file__).resolve().parent.parent.parent / "startup.py").read_text()


def write_metadata_files(settings: DeploySettings, directory: Path) -> Dict[str, Path]:
    """
    Write every boot metadata value to its own file.

    Returns:
        Mapping of metadata key -> file, suitable for --metadata-from-file
    """
    files = {
        "startup-script": directory / "startup-script.sh",
        PROGRAM_ATTRIBUTE: directory / "startup.py",
        CONFIG_ATTRIBUTE: directory / "boot.yml",
    }
    files["startup-script"].write_text(render_startup_stub())
    files[PROGRAM_ATTRIBUTE].write_text(boot_program_source())
    files[CONFIG_ATTRIBUTE].write_text(render_boot_config(settings))
    logger.debug(f"Wrote boot metadata files to {directory}")
    return files


def metadata_from_file_arg(files: Dict[str, Path]) -> str:
    return ",".join(f"{key}={path}" for key, path in files.items())
