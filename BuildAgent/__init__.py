"""BuildAgent: applies planner-produced action plans to a local project tree."""
