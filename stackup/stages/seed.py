"""Example data and the operator's local script."""

import os
from typing import Any, Dict

from stackup.stages.base import Stage


class SeedStage(Stage):
    name = "seed"

    def execute(self) -> Dict[str, Any]:
        seed = self.config.seed
        for command in seed.commands:
            self.context.collaborators.seed(command, self.selection)

        ran_local = False
        script = seed.local_script
        if script is not None and script.is_file() and os.access(script, os.X_OK):
            self.context.collaborators.run_local_script(script)
            ran_local = True
        elif script is not None:
            self.logger.info(
                f"Local script {script} missing or not executable, skipping",
                extra={"stage": self.name, "event": "local_script_skipped"},
            )

        return {"commands": len(seed.commands), "local_script": ran_local}
