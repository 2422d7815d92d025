"""Data models for parties, constituencies and modelled outcomes."""

from dataclasses import dataclass

TURNOUT_OUTCOME = "turnout"
TURNOUT_PREDICTION = "pred_turnout"


@dataclass(frozen=True)
class Party:
    """A party outcome and every column the pipeline derives for it.

    ``key`` doubles as the vote-panel dummy column and the model outcome name.
    ``result_column`` names the true vote-share column in the results table;
    ``None`` means the true share is the sum of the minor-party columns.
    """

    key: str
    label: str
    vote_codes: tuple[int, ...]
    result_column: str | None

    @property
    def prediction(self) -> str:
        return f"pred_{self.key}"

    @property
    def weighted(self) -> str:
        return f"weighted_{self.key}"

    @property
    def scaled(self) -> str:
        return f"scaled_{self.key}"

    @property
    def estimate(self) -> str:
        return f"est_{self.key}"

    @property
    def true_share(self) -> str:
        return f"true_{self.key}"

    @property
    def scale_factor(self) -> str:
        return f"scale_{self.key}"


CONSERVATIVE = Party("con", "Conservative", (1,), "con")
LABOUR = Party("lab", "Labour", (2,), "lab")
LIBERAL_DEMOCRAT = Party("ld", "Liberal Democrat", (3,), "ld")
OTHER = Party("oth", "Other", tuple(range(4, 14)), None)

PARTIES: tuple[Party, ...] = (CONSERVATIVE, LABOUR, LIBERAL_DEMOCRAT, OTHER)


@dataclass(frozen=True)
class Constituency:
    """A Westminster constituency as enumerated from the post-stratification frame."""

    code: str
    name: str
