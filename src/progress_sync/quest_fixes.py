"""Static quest fixes applied at start-up.

Each entry corrects a catalog record that the upstream refresh gets wrong.
knownId is the id last seen for the record; upstream may re-key it, in which
case the resolver finds it by name.
"""

from .models import QuestFixSpec

QUEST_FIXES: tuple[QuestFixSpec, ...] = (
    QuestFixSpec(
        display_name="Bad Rep Evidence",
        known_id="5967530a86f77462ba22226b",
        patch={"map_name": "Customs"},
    ),
    QuestFixSpec(
        display_name="The Walls Have Eyes",
        known_id="669fa39c64ea11e84c0642a6",
        patch={
            "map_name": "Any",
            "required_items": [{"name": "WI-FI Camera", "count": 3, "foundInRaid": False}],
        },
    ),
    QuestFixSpec(
        display_name="Rough Tarkov",
        known_id="66b38c7bf85b8bf7250f9cb6",
        patch={"map_name": "Any"},
    ),
    QuestFixSpec(
        display_name="The Guide",
        known_id="5c0d4e61d09282029f53920e",
        patch={"map_name": "Any"},
    ),
    QuestFixSpec(
        display_name="Lend-Lease - Part 1",
        known_id="5b478b1886f7744d1b23c57d",
        patch={"map_name": "Any", "required_for_kappa": True},
    ),
)


def all_quest_fixes() -> list[QuestFixSpec]:
    return list(QUEST_FIXES)
