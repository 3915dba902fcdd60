import re

# Common calling codes -> country label
COUNTRY_CODES = {
    "1": "US/CA", "7": "RU", "20": "EG", "27": "ZA", "30": "GR", "31": "NL",
    "32": "BE", "33": "FR", "34": "ES", "36": "HU", "39": "IT", "40": "RO",
    "41": "CH", "43": "AT", "44": "GB", "45": "DK", "46": "SE", "47": "NO",
    "48": "PL", "49": "DE", "51": "PE", "52": "MX", "53": "CU", "54": "AR",
    "55": "BR", "56": "CL", "57": "CO", "58": "VE", "60": "MY", "61": "AU",
    "62": "ID", "63": "PH", "64": "NZ", "65": "SG", "66": "TH", "81": "JP",
    "82": "KR", "84": "VN", "86": "CN", "90": "TR", "91": "IN", "92": "PK",
    "93": "AF", "94": "LK", "95": "MM", "98": "IR", "212": "MA", "213": "DZ",
    "216": "TN", "218": "LY", "220": "GM", "221": "SN", "234": "NG", "249": "SD",
    "254": "KE", "255": "TZ", "256": "UG", "260": "ZM", "263": "ZW", "351": "PT",
    "352": "LU", "353": "IE", "354": "IS", "358": "FI", "370": "LT", "371": "LV",
    "372": "EE", "380": "UA", "381": "RS", "385": "HR", "386": "SI", "420": "CZ",
    "421": "SK", "852": "HK", "853": "MO", "855": "KH", "856": "LA", "880": "BD",
    "886": "TW", "960": "MV", "961": "LB", "962": "JO", "963": "SY", "964": "IQ",
    "965": "KW", "966": "SA", "967": "YE", "968": "OM", "970": "PS", "971": "AE",
    "972": "IL", "973": "BH", "974": "QA", "975": "BT", "976": "MN", "977": "NP",
    "992": "TJ", "993": "TM", "994": "AZ", "995": "GE", "996": "KG", "998": "UZ",
}


def digits_only(phone_number: str) -> str:
    return re.sub(r"[^0-9]", "", phone_number or "")


def _country_prefix(cleaned: str):
    # Longest calling codes first
    for length in (3, 2, 1):
        prefix = cleaned[:length]
        if prefix in COUNTRY_CODES:
            return prefix
    return None


def get_country_from_phone(phone_number: str) -> str:
    prefix = _country_prefix(digits_only(phone_number))
    return COUNTRY_CODES[prefix] if prefix else "Unknown"


def format_phone_number(phone_number: str, fmt: str = "e164") -> str:
    """
    Formats a phone number.
    e164:          +919876543210
    local:         9876543210 (calling code stripped when recognised)
    international: +919 876 543 210
    Any other format returns the bare digits.
    """
    cleaned = digits_only(phone_number)

    if fmt == "e164":
        return "+" + cleaned
    if fmt == "local":
        prefix = _country_prefix(cleaned)
        return cleaned[len(prefix):] if prefix else cleaned
    if fmt == "international":
        return "+" + re.sub(r"(\d{1,3})(\d{3})(\d{3})(\d+)", r"\1 \2 \3 \4", cleaned, count=1)
    return cleaned
