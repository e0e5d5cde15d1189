import importlib
from pathlib import Path
import sys

from dipy.workflows.flow_runner import run_flow

cli_flows = {
    "mtnorm_normalize": ("mtnorm.workflows.normalization", "MTNormalizeFlow"),
}


def run():
    """Run the workflow registered under the invoked script name."""
    script_name = Path(sys.argv[0]).stem
    if script_name not in cli_flows:
        raise ValueError(
            f"Unknown command {script_name}. Available commands: "
            f"{', '.join(sorted(cli_flows))}"
        )
    mod_name, flow_name = cli_flows[script_name]
    mod = importlib.import_module(mod_name)
    run_flow(getattr(mod, flow_name)())
