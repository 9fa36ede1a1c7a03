"""Create a demo story for development/testing."""

import shutil

from story_agents.models import Character, Evidence, Location, Story
from story_agents.storage import Storage

DEMO_STORY_ID = "harbor-lights"

DEMO_STORY = Story(
    id=DEMO_STORY_ID,
    title="The Harbor Lights Affair",
    full_story=(
        "A research vessel, the Harbor Lights, docked three nights ago with its chief "
        "scientist missing. The crew insists she went ashore; the harbour logs say "
        "otherwise. Somewhere between the ship's secret lab and the engine room lies "
        "the truth, and the captain is not telling all of it."
    ),
    starting_location_ids=["loc_docks"],
    locations=[
        Location(
            id="loc_lab",
            location_name="Secret Lab",
            visual_description="A cramped compartment of humming freezers behind a false bulkhead.",
            character_ids_in_location=[],
        ),
        Location(
            id="loc_engine",
            location_name="Engine Room",
            visual_description="Hot, loud, and slick with oil; a locker stands half open.",
            character_ids_in_location=["char_mateo"],
        ),
        Location(
            id="loc_office",
            location_name="Captain's Office",
            visual_description="Brass fittings, charts pinned to every wall, a locked drawer.",
            character_ids_in_location=["char_hale"],
        ),
        Location(
            id="loc_docks",
            location_name="The Docks",
            visual_description="Fog, gulls, and the gangway of the Harbor Lights.",
            character_ids_in_location=["char_june"],
        ),
    ],
    characters=[
        Character(
            id="char_mateo",
            name="Mateo Ruiz",
            appearance_description="A wiry engineer with grease up to his elbows.",
            personality_profile="Nervous and anxious, eager to please once reassured.",
            knowledge_base=(
                "Mateo saw the chief scientist carry a cooler toward the secret lab the "
                "night she vanished. He knows the lab is behind the false bulkhead in "
                "the engine room and has the access code scratched inside his locker."
            ),
            holds_evidence=[
                Evidence(
                    id="ev_keycard",
                    title="Lab keycard",
                    description="A scuffed keycard with the chief scientist's photo.",
                    visual_description="White plastic, a cracked corner, a magnetic stripe.",
                ),
            ],
            knows_location_ids=["loc_lab", "loc_engine"],
        ),
        Character(
            id="char_hale",
            name="Captain Hale",
            appearance_description="Tall, grey-bearded, immaculate uniform.",
            personality_profile="Arrogant and proud, guilty about the cargo he agreed to carry.",
            knowledge_base=(
                "Hale accepted money to carry an unregistered sample. He suspects the "
                "scientist tried to report it. He keeps the cargo manifest in his office."
            ),
            holds_evidence=[
                Evidence(
                    id="ev_manifest",
                    title="Cargo manifest",
                    description="A manifest with one line blacked out.",
                    visual_description="Folded paper, coffee-stained, a heavy black bar of ink.",
                ),
            ],
            knows_location_ids=["loc_office", "loc_lab"],
        ),
        Character(
            id="char_june",
            name="June Park",
            appearance_description="Harbour clerk in a rain jacket, clipboard in hand.",
            personality_profile="Professional and composed, honest when asked directly.",
            knowledge_base=(
                "June logs every person leaving the docks. Nobody signed out the night "
                "the scientist disappeared."
            ),
            holds_evidence=[
                Evidence(
                    id="ev_logbook",
                    title="Dock logbook",
                    description="The harbour sign-out log for the last week.",
                    visual_description="A damp ledger with neat handwriting.",
                ),
            ],
            knows_location_ids=["loc_docks", "loc_engine"],
        ),
    ],
)


def create_demo_data(storage: Storage) -> Story:
    """Wipe stored agents and write the demo story."""
    agents_dir = storage.base_path / "agents"
    if agents_dir.exists():
        shutil.rmtree(agents_dir)
    agents_dir.mkdir(parents=True, exist_ok=True)
    return storage.save_story(DEMO_STORY)
