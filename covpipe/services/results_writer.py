"""
Results Writer
==============
Serializes a finished PipelineRun into a run.json summary.
"""
import json
import logging
import os

from covpipe.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class ResultsWriter:
    """
    Writes the terminal state of a run (status, failing stage, step
    results, report metadata) for operators and dashboards.
    """

    @staticmethod
    def build_summary(run: PipelineRun) -> dict:
        data = run.model_dump(mode="json")
        data["terminal_status"] = run.describe()
        data["exit_code"] = run.exit_code
        return data

    @staticmethod
    def write_results(run: PipelineRun, output_path: str) -> bool:
        """
        Write run.json. Returns False instead of raising; a summary that
        cannot be written never changes the outcome of the run.
        """
        try:
            abs_output = os.path.abspath(output_path)
            os.makedirs(os.path.dirname(abs_output), exist_ok=True)
            logger.info("Writing run summary to %s", abs_output)

            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(ResultsWriter.build_summary(run), f, indent=2)

            return True

        except OSError as e:
            logger.error("Failed to write run summary: %s", e, exc_info=True)
            return False
