from .step_10_inject_runtime import InjectRuntimeStep
from .step_20_startup_script import StartupScriptStep
from .step_30_registry import RegistryStep

__all__ = [
    "InjectRuntimeStep",
    "StartupScriptStep",
    "RegistryStep",
]
