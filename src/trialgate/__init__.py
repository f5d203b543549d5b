"""trialgate: HTTP control plane for experiment orchestration.

Routes experiment, trial-job and metric requests to an orchestration engine
and manages TensorBoard sessions scoped to sets of trial jobs.
"""

__version__ = "1.0.0"

from .contracts import (
    CleanupReport,
    DataStore,
    ExperimentMode,
    Manager,
    MetricDataRecord,
    TrialJobInfo,
    TrialJobStatistics,
    TrialJobStatus,
    render_trial_job,
    with_stderr_path,
)
from .tensorboard import TensorBoardLauncher, TensorBoardSessionManager

__all__ = [
    "__version__",
    "CleanupReport",
    "DataStore",
    "ExperimentMode",
    "Manager",
    "MetricDataRecord",
    "TensorBoardLauncher",
    "TensorBoardSessionManager",
    "TrialJobInfo",
    "TrialJobStatistics",
    "TrialJobStatus",
    "render_trial_job",
    "with_stderr_path",
]
