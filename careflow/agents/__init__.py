"""
Agents: the supervisor and the task executors it dispatches to.

``careflow.agents.supervisor`` imports the executor, which imports the
memory and harness layers; import from the submodules when only one piece
is needed.
"""
from careflow.agents.executor import TaskExecutor
from careflow.agents.profiles import ExecutorProfile, default_profiles
from careflow.agents.supervisor import Supervisor

__all__ = ["ExecutorProfile", "Supervisor", "TaskExecutor", "default_profiles"]
