from gtdtxt_formula.common.config import AppPaths, RuntimeConfig
from gtdtxt_formula.common.state import InstallState, load_install_state, save_install_state

__all__ = [
    "AppPaths",
    "RuntimeConfig",
    "InstallState",
    "load_install_state",
    "save_install_state",
]
