from datetime import datetime

MONTHS_ES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def format_price(value) -> str:
    """Formats an amount the es-AR way: $ 1.234,56"""
    text = f"{float(value or 0):,.2f}"
    return "$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_date(value) -> str:
    """19 de octubre de 2026, 14:30"""
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return f"{value.day} de {MONTHS_ES[value.month - 1]} de {value.year}, {value:%H:%M}"
