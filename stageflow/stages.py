"""
Stage catalog: the 13 manufacturing stages in production order.
Any forward jump is allowed (real production sometimes skips stages); moving
backward is only accepted as an explicit correction, which the engine checks.
"""
from enum import Enum


class Stage(str, Enum):
    DESIGN_PROPOSAL = "DesignProposal"
    PROOF_APPROVAL = "ProofApproval"
    MEASUREMENTS = "Measurements"
    PRODUCTION_PLANNING = "ProductionPlanning"
    CUTTING = "Cutting"
    SEWING = "Sewing"
    QUALITY_CONTROL = "QualityControl"
    FINISHING = "Finishing"
    FINAL_INSPECTION = "FinalInspection"
    PACKAGING = "Packaging"
    SHIPPING_PREPARATION = "ShippingPreparation"
    SHIP_ORDER = "ShipOrder"
    DELIVERY = "Delivery"


class TransitionKind(str, Enum):
    FORWARD = "forward"
    SAME = "same"
    BACKWARD = "backward"


STAGES: tuple[Stage, ...] = tuple(Stage)
INITIAL_STAGE = Stage.DESIGN_PROPOSAL
TERMINAL_STAGE = STAGES[-1]

STAGE_DISPLAY_NAMES: dict[Stage, str] = {
    Stage.DESIGN_PROPOSAL: "Design Proposal",
    Stage.PROOF_APPROVAL: "Proof Approval",
    Stage.MEASUREMENTS: "Measurements",
    Stage.PRODUCTION_PLANNING: "Production Planning",
    Stage.CUTTING: "Cutting",
    Stage.SEWING: "Sewing",
    Stage.QUALITY_CONTROL: "Quality Control",
    Stage.FINISHING: "Finishing",
    Stage.FINAL_INSPECTION: "Final Inspection",
    Stage.PACKAGING: "Packaging",
    Stage.SHIPPING_PREPARATION: "Shipping Preparation",
    Stage.SHIP_ORDER: "Ship Order",
    Stage.DELIVERY: "Delivery",
}

_INDEX: dict[Stage, int] = {stage: i for i, stage in enumerate(STAGES)}
_BY_DISPLAY_NAME: dict[str, Stage] = {name.lower(): stage for stage, name in STAGE_DISPLAY_NAMES.items()}


def parse_stage(value: "Stage | str") -> Stage:
    """Accept a Stage, its value ("ShipOrder") or its display name ("Ship Order")."""
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        stage = _BY_DISPLAY_NAME.get(str(value).strip().lower())
        if stage is None:
            raise ValueError(f"Unknown stage: {value!r}") from None
        return stage


def index_of(stage: "Stage | str") -> int:
    return _INDEX[parse_stage(stage)]


def is_forward_transition(from_stage: "Stage | str", to_stage: "Stage | str") -> bool:
    """True iff to_stage comes strictly after from_stage."""
    return index_of(to_stage) > index_of(from_stage)


def is_terminal(stage: "Stage | str") -> bool:
    return parse_stage(stage) is TERMINAL_STAGE


def classify_transition(from_stage: "Stage | str", to_stage: "Stage | str") -> TransitionKind:
    current, target = index_of(from_stage), index_of(to_stage)
    if target > current:
        return TransitionKind.FORWARD
    if target == current:
        return TransitionKind.SAME
    return TransitionKind.BACKWARD


def display_name(stage: "Stage | str") -> str:
    return STAGE_DISPLAY_NAMES[parse_stage(stage)]
