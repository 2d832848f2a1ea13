"""Static-threshold right-sizing suggestions."""

SIZE_ORDER = ["nano", "micro", "small", "medium", "large", "xlarge", "2xlarge"]


def suggest_instance_type(current_type: str, cpu_usage: float) -> str:
    """
    Suggest a smaller instance size for an underused instance.

    Below 5% CPU drop two sizes, below 10% drop one, otherwise keep the type.
    Unknown sizes are treated as "medium".
    """
    parts = current_type.split(".")
    if len(parts) < 2:
        return current_type

    family, size = parts[0], parts[1]
    index = SIZE_ORDER.index(size) if size in SIZE_ORDER else SIZE_ORDER.index("medium")

    if cpu_usage < 5:
        index = max(0, index - 2)
    elif cpu_usage < 10:
        index = max(0, index - 1)
    else:
        return current_type

    return f"{family}.{SIZE_ORDER[index]}"


def low_utilization_message(name: str, instance_id: str, instance_type: str, cpu_average: float) -> str:
    message = (
        f"Alert: EC2 Instance {name} ({instance_id}) has low CPU utilization "
        f"({cpu_average:.2f}%). Consider resizing or stopping this instance to save costs."
    )
    suggestion = suggest_instance_type(instance_type, cpu_average) if instance_type else ""
    if suggestion and suggestion != instance_type:
        message += f" Suggested type: {suggestion} (currently {instance_type})."
    return message
