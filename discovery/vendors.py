"""MAC vendor lookup and device-type classification."""
import re
import threading
from pathlib import Path
from typing import Dict, Optional

from config import get_logger
from storage.models import last_octet

logger = get_logger(__name__)


class DeviceType:
    """Device type classifications."""
    MOBILE = "mobile"
    TABLET = "tablet"
    LAPTOP = "laptop"
    DESKTOP = "desktop"
    ROUTER = "router"
    TV = "tv"
    IOT = "iot"
    GAMING = "gaming"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Keyword table, checked in order; first match wins
DEVICE_TYPE_KEYWORDS = (
    (DeviceType.MOBILE, ("iphone", "android", "phone", "pixel", "galaxy", "mobile")),
    (DeviceType.TABLET, ("ipad", "tablet", "kindle")),
    (DeviceType.LAPTOP, ("laptop", "macbook", "notebook")),
    (DeviceType.DESKTOP, ("desktop", "pc", "imac", "computer", "windows device", "linux device")),
    (DeviceType.ROUTER, ("router", "gateway", "access point")),
    (DeviceType.TV, ("tv", "chromecast", "roku", "fire tv")),
    (DeviceType.IOT, ("echo", "nest", "homepod", "smart", "iot", "esp", "camera", "plug")),
    (DeviceType.GAMING, ("playstation", "xbox", "nintendo", "switch")),
    (DeviceType.NETWORK, ("switch", "ap", "mesh", "extender", "network device")),
)


def _keyword_matches(keyword: str, lowered: str) -> bool:
    # Short keywords (pc, tv, ap, ...) must be whole words so "apple" is not "ap"
    if len(keyword) <= 3:
        return re.search(rf'\b{re.escape(keyword)}\b', lowered) is not None
    return keyword in lowered


def classify_device_type(name: Optional[str]) -> str:
    """Map a resolved device name to a DeviceType by keyword."""
    if not name:
        return DeviceType.UNKNOWN
    lowered = name.lower()
    for device_type, keywords in DEVICE_TYPE_KEYWORDS:
        if any(_keyword_matches(keyword, lowered) for keyword in keywords):
            return device_type
    return DeviceType.UNKNOWN


# Built-in OUI -> vendor subset used when no IEEE database is installed
BUILTIN_VENDORS: Dict[str, str] = {
    # Apple
    "001B63": "Apple", "28F076": "Apple", "B8E856": "Apple", "3C22FB": "Apple",
    "A4C361": "Apple", "8C2937": "Apple", "DC86D8": "Apple", "E0F847": "Apple",
    "90B21F": "Apple", "F0DBE2": "Apple", "6C40F6": "Apple",
    # Samsung
    "002312": "Samsung", "34BE00": "Samsung", "78F882": "Samsung", "C06599": "Samsung",
    "E8E5D6": "Samsung", "442A60": "Samsung", "7CF854": "Samsung", "08EDB9": "Samsung",
    # Xiaomi
    "342387": "Xiaomi", "50EC50": "Xiaomi", "78A3E4": "Xiaomi", "AC84C6": "Xiaomi",
    "040CCE": "Xiaomi", "3400A5": "Xiaomi",
    # Huawei
    "1C1B0D": "Huawei", "E0C97A": "Huawei", "480FCF": "Huawei", "B4A5AC": "Huawei",
    "002E5D": "Huawei", "7824AF": "Huawei",
    # OnePlus
    "AC3743": "OnePlus", "A0821F": "OnePlus",
    # Google
    "F4F5E8": "Google", "DA7C02": "Google", "CC3ADF": "Google", "68C9A8": "Google",
    # Microsoft
    "000D3A": "Microsoft", "7C1E52": "Microsoft", "E0CB4E": "Microsoft", "9CB70D": "Microsoft",
    # LG, Sony
    "001E75": "LG", "10F96F": "LG", "B0D09C": "LG",
    "080046": "Sony", "54724F": "Sony", "984827": "Sony",
    # PC makers
    "001A4B": "HP", "009C02": "HP", "6CAB31": "HP",
    "001E4F": "Dell", "B8AC6F": "Dell", "84A9C4": "Dell",
    "008CFA": "Lenovo", "E41D2D": "Lenovo", "4C80F1": "Lenovo",
    # Routers
    "000C41": "Linksys", "001F33": "Netgear", "0050F2": "TP-Link", "C4E90A": "TP-Link",
    "E84E06": "TP-Link", "001A2E": "D-Link", "0017E2": "ASUS", "2C4D54": "ASUS",
    # Others
    "B827EB": "Raspberry Pi", "ECADB8": "Amazon Echo", "747548": "Nintendo", "001BC5": "Nintendo",
}

# OUI -> product-level name, used for fallback names
DETAILED_VENDORS: Dict[str, str] = {
    "001B63": "Apple iPhone",
    "28F076": "Apple MacBook",
    "B8E856": "Apple iPad",
    "3C22FB": "Apple iMac",
    "A4C361": "Apple TV",
    "8C2937": "Apple Watch",
    "DC86D8": "Apple MacBook Pro",
    "E0F847": "Apple iPhone",
    "90B21F": "Apple AirPods",
    "F0DBE2": "Apple HomePod",
    "002312": "Samsung Galaxy",
    "34BE00": "Samsung Smart TV",
    "78F882": "Samsung Galaxy",
    "C06599": "Samsung Note",
    "E8E5D6": "Samsung Galaxy",
    "442A60": "Samsung Tablet",
    "DA0BA9": "Google Pixel",
    "F4F5E8": "Google Nest",
    "6C19C0": "Google Chromecast",
    "747548": "Amazon Echo",
    "68B6CF": "Amazon Fire TV",
    "38F73D": "Amazon Kindle",
    "000C41": "Linksys Router",
    "001F33": "Netgear Router",
    "0050F2": "Microsoft Router",
    "C4E90A": "TP-Link Router",
}

MOBILE_OUIS = frozenset({
    "001B63", "28F076", "B8E856",  # Apple
    "002312", "34BE00", "78F882",  # Samsung
    "342387", "50EC50", "78A3E4",  # Xiaomi
    "AC3743", "A0821F",            # OnePlus
})

ROUTER_VENDORS = frozenset({"linksys", "netgear", "tp-link", "d-link", "asus"})
DEVICE_VENDORS = frozenset({"apple", "samsung", "xiaomi", "huawei", "google", "microsoft", "nintendo"})


def oui_of(mac: Optional[str]) -> Optional[str]:
    """First three octets as 6 uppercase hex digits, or None for short input."""
    if not mac:
        return None
    clean = mac.upper().replace(':', '').replace('-', '').replace('.', '')
    return clean[:6] if len(clean) >= 6 else None


def detailed_vendor(mac: Optional[str]) -> Optional[str]:
    return DETAILED_VENDORS.get(oui_of(mac) or "")


def is_mobile_oui(mac: Optional[str]) -> bool:
    return (oui_of(mac) or "") in MOBILE_OUIS


def format_vendor_name(vendor: str, ip: str) -> str:
    """Vendor-specific display name, e.g. 'Apple Device (40)', 'TP-Link Router (1)'."""
    number = last_octet(ip)
    lowered = vendor.lower()
    if lowered in DEVICE_VENDORS:
        return f"{vendor} Device ({number})"
    if lowered in ROUTER_VENDORS:
        return f"{vendor} Router ({number})"
    if lowered in ("raspberry pi", "amazon echo"):
        return f"{vendor} ({number})"
    return f"{vendor} Device ({number})"


class OUIDatabase:
    """IEEE OUI database for MAC vendor lookup.

    Uses the database from arp-scan if available, otherwise falls back
    to the built-in subset.
    """

    # Possible paths for OUI database
    OUI_PATHS = [
        "/opt/homebrew/share/arp-scan/ieee-oui.txt",
        "/usr/local/share/arp-scan/ieee-oui.txt",
        "/usr/share/arp-scan/ieee-oui.txt",
    ]

    def __init__(self, paths=None):
        self._paths = list(paths) if paths is not None else self.OUI_PATHS
        self._vendors: Dict[str, str] = {}
        self._loaded = False
        self._lock = threading.Lock()

    def _load(self) -> None:
        """Load OUI database from file."""
        for path in self._paths:
            if not Path(path).exists():
                continue
            try:
                vendors = {}
                with open(path, 'r', encoding='utf-8', errors='ignore') as f:
                    for line in f:
                        line = line.strip()
                        if not line or line.startswith('#'):
                            continue
                        parts = line.split('\t', 1)
                        if len(parts) == 2:
                            prefix = parts[0].upper().replace(':', '').replace('-', '')
                            vendors[prefix] = parts[1].strip()
            except OSError as e:
                logger.debug(f"Failed to load OUI from {path}: {e}")
                continue
            self._vendors = vendors
            logger.info(f"Loaded {len(vendors)} OUI entries from {path}")
            return

        self._vendors = dict(BUILTIN_VENDORS)
        logger.debug("Using built-in OUI subset (install arp-scan for better vendor detection)")

    def lookup(self, mac_address: Optional[str]) -> Optional[str]:
        """Look up vendor from MAC address."""
        if not mac_address:
            return None
        with self._lock:
            if not self._loaded:
                self._load()
                self._loaded = True

        mac_clean = mac_address.upper().replace(':', '').replace('-', '').replace('.', '')

        # Built-in names take precedence so formatted names stay stable
        builtin = BUILTIN_VENDORS.get(mac_clean[:6])
        if builtin:
            return builtin

        # Try progressively shorter prefixes (6, 5, 4, 3 bytes)
        for length in [12, 10, 8, 6]:
            prefix = mac_clean[:length]
            if prefix in self._vendors:
                return self._vendors[prefix]
        return None

    def __len__(self) -> int:
        return len(self._vendors)
