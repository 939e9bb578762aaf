"""Phone number masking for log lines and audit output."""


def mask_phone(phone: str | None) -> str:
    """
    Mask the middle digits of a phone number.

    Examples:
        +12025551234 → +1202***1234
        2025551234   → 202***1234
        1234         → ***

    Args:
        phone: Phone number in any format

    Returns:
        Masked phone number
    """
    if not phone:
        return "***"

    phone = phone.strip()
    digits = sum(ch.isdigit() for ch in phone)
    if digits < 7:
        return "***"

    return f"{phone[:-7]}***{phone[-4:]}"
