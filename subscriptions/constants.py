SUBSCRIPTIONS = {
    "DEFAULT_PROVIDER": "stripe",
    "CURRENCY": "USD",
    "MAX_COUNTRIES_PER_REQUEST": 50,
    "CURRENCY_SYMBOLS": {  # keep currency symbols separate
        "USD": "$", "NGN": "₦", "EUR": "€", "GBP": "£", "GHS": "₵", "KES": "KSh", "ZAR": "R",
    },
}
