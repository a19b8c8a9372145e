"""Provision, track and tear down containerized experiment runs."""

from runs_manager.models import NewRequest, RunRecord
from runs_manager.provision import provision
from runs_manager.teardown import kill_runs, remove_runs

__all__ = ["NewRequest", "RunRecord", "kill_runs", "provision", "remove_runs"]
