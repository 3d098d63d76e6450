from mirrord.planning.planner import TransferPlan, metadata_compare, plan

__all__ = ["TransferPlan", "metadata_compare", "plan"]
