"""
Characteristic deck
特征牌库 - 开局发放特征、重抽/替换时随机取值
"""

import random
import uuid
from typing import Dict, List, Optional, Sequence

from bunker.models.characteristic import Characteristic
from bunker.schemas.game import CharacteristicCategory

AGE_RANGE = (18, 80)

CATEGORY_LABELS: Dict[str, str] = {
    "gender": "Gender",
    "age": "Age",
    "profession": "Profession",
    "bio": "Biology",
    "health": "Health",
    "hobby": "Hobby",
    "phobia": "Phobia",
    "baggage": "Baggage",
    "fact": "Fact",
    "trait": "Trait",
}

DECK: Dict[str, Sequence[str]] = {
    "gender": ("Male", "Female", "Androgynous"),
    "profession": (
        "Firefighter", "Lawyer", "Ethnographer", "Roboticist", "Builder", "Translator",
        "Poacher", "Shop assistant", "Police officer", "Detective", "Car mechanic",
        "Biologist", "Hacker", "Psychic", "Historian", "Cook", "Model", "Physicist",
        "Chemist", "Journalist", "Philosopher", "Nurse", "Ecologist", "Tattoo artist",
        "Designer", "Electrician", "Farmer", "Tour guide", "Marketer", "Judge",
        "Burglar", "Programmer", "Writer", "Forester", "Psychologist", "Pilot",
        "Soldier", "Virologist", "Dentist", "Surgeon", "Archaeologist", "Doctor",
        "Teacher", "Engineer", "Architect",
    ),
    "bio": (
        "Fertile", "Infertile", "Pregnant", "Heterosexual", "Asexual", "Twin",
        "Left-handed", "Night owl",
    ),
    "health": (
        "Perfectly healthy", "Alcoholism", "Healthy lifestyle", "Hand tremor",
        "Never examined", "HIV", "Diabetes", "Asthma", "Short-sighted",
        "Deaf in one ear", "Dust allergy",
    ),
    "hobby": (
        "Local history", "Tarot reading", "Ufology", "Movies and series", "Dancing",
        "Contemporary art", "Parkour", "Hunting and fishing", "Meditation",
        "Amateur radio", "Video games", "Hydroponics", "Martial arts", "Alchemy",
        "Robotics", "Pyrotechnics", "Gardening", "Brewing", "Board games", "Yoga",
        "Chess", "Programming",
    ),
    "phobia": (
        "Claustrophobia", "Arachnophobia", "Fear of the dark", "Fear of heights",
        "Fear of crowds", "Fear of water", "Fear of blood", "No phobias",
    ),
    "baggage": (
        "First aid kit", "Seeds", "Axe", "Radio set", "Water filter", "Rifle",
        "Tent", "Solar panel", "Encyclopedia", "Guitar", "Canned food", "Toolbox",
        "Gas mask", "Fishing rod", "Laptop",
    ),
    "fact": (
        "Served in prison", "Knows three languages", "Won a lottery", "Ran a marathon",
        "Was a cult member", "Survived a plane crash", "Has a twin", "Sleepwalks",
        "Can pick locks",
    ),
    "trait": (
        "Brave", "Cowardly", "Kind", "Aggressive", "Honest", "Liar", "Leader",
        "Introvert", "Optimist", "Paranoid",
    ),
}


def random_value(category: str, rng: Optional[random.Random] = None, exclude: Optional[str] = None) -> str:
    """Draw a value for ``category``; avoids ``exclude`` when the deck allows it"""
    rng = rng or random
    if category == CharacteristicCategory.AGE.value:
        while True:
            value = str(rng.randint(*AGE_RANGE))
            if value != exclude:
                return value

    options = list(DECK.get(category, ()))
    if not options:
        raise KeyError(f"Unknown characteristic category: {category}")
    if exclude is not None and len(options) > 1:
        options = [o for o in options if o != exclude]
    return rng.choice(options)


def deal_characteristics(
    player_id: str,
    categories: Sequence[str],
    rng: Optional[random.Random] = None,
) -> List[Characteristic]:
    """一名玩家每个启用类别一张特征，初始均未公开"""
    dealt = []
    for order, category in enumerate(categories):
        dealt.append(Characteristic(
            id=str(uuid.uuid4()),
            player_id=player_id,
            category=category,
            name=CATEGORY_LABELS.get(category, category.title()),
            value=random_value(category, rng),
            is_revealed=False,
            reveal_round=None,
            sort_order=order,
        ))
    return dealt
