def format_duration(seconds):
    """
    Format a duration in seconds into a human-readable string.

    Args:
        seconds (float): Duration in seconds.
    Returns:
        str: Formatted duration string.
    """
    if seconds < 60:
        return f"{seconds:.2f} sec"
    elif seconds < 3600:
        return f"{seconds / 60:.2f} min"
    else:
        return f"{seconds / 3600:.2f} hr"


def format_rates(rates, precision=4):
    """
    Render a rate vector as ``name=value`` pairs in scientific notation.

    Args:
        rates (Mapping[str, float]): Rate id to value.
        precision (int): Significant digits after the decimal point.
    Returns:
        str: Comma separated pairs, in the mapping's order.
    """
    return ", ".join(f"{k}={float(v):.{precision}e}" for k, v in rates.items())
