"""Thin wrapper around the gcloud CLI."""
import logging
import shlex
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

GCLOUD_BIN = "gcloud"


class GcloudError(Exception):
    """A gcloud invocation exited with a non-zero status."""

    def __init__(self, args: List[str], returncode: int, stderr: str = ""):
        self.args_list = args
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"'{shlex.join(args)}' failed with exit code {returncode}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


class GcloudRunner:
    """Runs gcloud subcommands, optionally pinned to a project."""

    def __init__(self, project_id: Optional[str] = None, gcloud_bin: str = GCLOUD_BIN):
        self.project_id = project_id
        self.gcloud_bin = gcloud_bin

    def _command(self, args: List[str], project: bool) -> List[str]:
        command = [self.gcloud_bin, *args]
        if project and self.project_id:
            command.append(f"--project={self.project_id}")
        command.append("--quiet")
        return command

    def run(
        self,
        args: List[str],
        capture: bool = True,
        check: bool = True,
        project: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a gcloud subcommand.

        Args:
            args: Arguments after the gcloud binary, e.g. ["compute", "instances", "list"]
            capture: Capture stdout/stderr instead of inheriting the terminal
            check: Raise GcloudError on a non-zero exit code
            project: Append --project when the runner has one

        Returns:
            The completed process

        Raises:
            GcloudError: If the command fails and check is True
        """
        command = self._command(args, project)
        logger.debug(f"+ {shlex.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=capture,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            raise GcloudError(
                command, 127,
                "gcloud CLI not found. Install the Google Cloud SDK: https://cloud.google.com/sdk/docs/install"
            )

        if check and result.returncode != 0:
            raise GcloudError(command, result.returncode, result.stderr if capture else "")
        return result

    def exists(self, args: List[str]) -> bool:
        """Return True if a describe-style command succeeds."""
        result = self.run(args, check=False)
        return result.returncode == 0

    def get_value(self, args: List[str], project: bool = True) -> Optional[str]:
        """
        Return the stripped stdout of a command, or None when empty.

        gcloud prints "(unset)" for missing config values; that maps to None too.
        """
        try:
            result = self.run(args, project=project)
        except GcloudError as e:
            logger.debug(f"gcloud value lookup failed: {e}")
            return None
        value = (result.stdout or "").strip()
        if not value or value == "(unset)":
            return None
        return value

    def active_account(self) -> Optional[str]:
        return self.get_value(["config", "get-value", "account"], project=False)

    def configured_project(self) -> Optional[str]:
        return self.get_value(["config", "get-value", "project"], project=False)
