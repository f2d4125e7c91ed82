DEFAULT_CURRENCY = "USD"

# code -> (name, symbol)
_CURRENCY_INFO: dict[str, tuple[str, str]] = {
    "USD": ("US Dollar", "$"),
    "EUR": ("Euro", "€"),
    "GBP": ("British Pound", "£"),
    "JPY": ("Japanese Yen", "¥"),
    "CAD": ("Canadian Dollar", "C$"),
    "AUD": ("Australian Dollar", "A$"),
    "CHF": ("Swiss Franc", "Fr"),
    "CNY": ("Chinese Yuan", "¥"),
    "SEK": ("Swedish Krona", "kr"),
    "NOK": ("Norwegian Krone", "kr"),
    "DKK": ("Danish Krone", "kr"),
}

SUPPORTED_CURRENCIES: tuple[str, ...] = tuple(_CURRENCY_INFO)


def is_supported(code: str | None) -> bool:
    return code in _CURRENCY_INFO


def currency_name(code: str) -> str:
    info = _CURRENCY_INFO.get(code)
    return info[0] if info else code


def currency_symbol(code: str) -> str:
    info = _CURRENCY_INFO.get(code)
    return info[1] if info else code


def describe_currencies() -> list[dict[str, str]]:
    return [
        {"code": code, "name": name, "symbol": symbol}
        for code, (name, symbol) in _CURRENCY_INFO.items()
    ]
