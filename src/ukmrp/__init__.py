"""Westminster MRP - constituency vote-share estimates from surveys and census counts."""

__version__ = "2026.10.16"

from ukmrp.models import PARTIES as PARTIES
from ukmrp.models import Constituency as Constituency
from ukmrp.models import Party as Party
