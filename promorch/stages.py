"""
Stage definitions.

Pipeline order (project status after each stage):

    initiated -> discovery -> discovered -> transform -> transformed
              -> copy -> copied -> promote -> promoted -> verify -> completed

Discovery and verify are project-level stages: the scheduler claims the
project itself. Transform, copy and promote are batch stages: the scheduler
claims one batch of the stage's group at a time.
"""

from dataclasses import dataclass
from typing import Optional

from promorch.records import COPIED_TRACKING, PROMOTED_TRACKING
from promorch.schemas import BatchStatus, ItemType, ProjectStatus


@dataclass(frozen=True)
class StageDefinition:
    """
    Static description of one pipeline stage.

    Attributes:
        name: Stage name (also the worker name)
        predecessor: Project status that makes a project eligible
        target: Project status once every unit of the stage is done
        project_in_progress: Project status while a project-level stage runs
        group: Batch group for batch stages
        claimable: Batch status a batch must hold to be claimed
        in_progress: Batch status while a worker owns the batch
        done: Batch status written when the worker finishes
        tracking_file: Journal that successes are appended to for verification
    """
    name: str
    predecessor: ProjectStatus
    target: ProjectStatus
    project_in_progress: Optional[ProjectStatus] = None
    group: Optional[ItemType] = None
    claimable: Optional[BatchStatus] = None
    in_progress: Optional[BatchStatus] = None
    done: Optional[BatchStatus] = None
    tracking_file: Optional[str] = None

    @property
    def is_batch_stage(self) -> bool:
        return self.group is not None


DISCOVERY = StageDefinition(
    name="discovery",
    predecessor=ProjectStatus.INITIATED,
    project_in_progress=ProjectStatus.DISCOVERY_IN_PROGRESS,
    target=ProjectStatus.DISCOVERED,
)

TRANSFORM = StageDefinition(
    name="transform",
    predecessor=ProjectStatus.DISCOVERED,
    target=ProjectStatus.TRANSFORMED,
    group=ItemType.PROCESSING,
    claimable=BatchStatus.INITIATED,
    in_progress=BatchStatus.TRANSFORM_IN_PROGRESS,
    done=BatchStatus.PROCESSED,
)

COPY = StageDefinition(
    name="copy",
    predecessor=ProjectStatus.TRANSFORMED,
    target=ProjectStatus.COPIED,
    group=ItemType.NON_PROCESSING,
    claimable=BatchStatus.INITIATED,
    in_progress=BatchStatus.COPY_IN_PROGRESS,
    done=BatchStatus.COPIED,
    tracking_file=COPIED_TRACKING,
)

PROMOTE = StageDefinition(
    name="promote",
    predecessor=ProjectStatus.COPIED,
    target=ProjectStatus.PROMOTED,
    group=ItemType.PROCESSING,
    claimable=BatchStatus.PROCESSED,
    in_progress=BatchStatus.PROMOTE_IN_PROGRESS,
    done=BatchStatus.PROMOTED,
    tracking_file=PROMOTED_TRACKING,
)

VERIFY = StageDefinition(
    name="verify",
    predecessor=ProjectStatus.PROMOTED,
    project_in_progress=ProjectStatus.VERIFY_IN_PROGRESS,
    target=ProjectStatus.COMPLETED,
)

STAGES: dict[str, StageDefinition] = {
    s.name: s for s in (DISCOVERY, TRANSFORM, COPY, PROMOTE, VERIFY)
}


def get_stage(name: str) -> StageDefinition:
    """
    Look up a stage by name.

    Raises:
        KeyError: If the stage is unknown
    """
    if name not in STAGES:
        raise KeyError(f"Unknown stage: {name}. Available: {', '.join(STAGES)}")
    return STAGES[name]


def stages_for_group(group: ItemType) -> list[StageDefinition]:
    """Batch stages that run over ``group``, in pipeline order."""
    return [s for s in STAGES.values() if s.group == ItemType(group)]
