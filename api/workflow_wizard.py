"""
Multi-step workflow wizard.

``POST /api/workflows/generate/parse`` reads a request such as
"500 chefs rating a recipe" without calling a model: agent count and noun,
naming style, task type, input type and demographics are picked out with
keyword tables, and a four-node skeleton (input, agent placeholder,
aggregator, output) is returned.

``POST /api/workflows/generate/batch`` then fills the placeholder in
batches, producing deterministic names and traits for each agent index
(age and personality are drawn at random).
"""

from __future__ import annotations

import math
import random
import re
import time
from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from api.shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflow-wizard"])

AGENTS_PER_BATCH = 25
DEFAULT_AGENT_COUNT = 10

NamingStyle = Literal["professional", "casual", "fantasy", "numbered"]
TaskType = Literal["rating", "reaction", "analysis", "testing", "creation", "voting", "debate", "custom"]


# ============================================================================
# Intent tables
# ============================================================================

PROFESSIONAL_NOUNS = [
    "scientist", "researcher", "doctor", "professor", "lawyer", "engineer",
    "analyst", "expert", "specialist", "consultant", "physician", "surgeon",
    "architect", "director", "manager", "executive", "officer", "administrator",
    "therapist", "psychologist", "psychiatrist", "pharmacist", "nurse",
    "attorney", "judge", "economist", "statistician", "mathematician",
    "biologist", "chemist", "physicist", "geologist", "astronomer",
]

FANTASY_NOUNS = [
    "alien", "robot", "android", "cyborg", "ai", "wizard", "witch", "mage",
    "knight", "dragon", "elf", "dwarf", "orc", "goblin", "troll", "giant",
    "vampire", "werewolf", "zombie", "ghost", "demon", "angel", "god", "titan",
    "monster", "creature", "beast", "spirit", "fairy", "pixie", "gnome",
    "samurai", "ninja", "pirate", "viking", "gladiator", "spartan", "warrior",
    "superhero", "villain", "mutant", "jedi", "sith",
]

TASK_VERB_PATTERNS = {
    "rating": ["rate", "rating", "score", "scoring", "rank", "ranking", "evaluate", "evaluating",
               "grade", "grading", "judge", "judging", "assess", "assessing"],
    "reaction": ["react", "reacting", "watch", "watching", "view", "viewing", "respond", "responding",
                 "experience", "experiencing", "feel", "feeling"],
    "analysis": ["analyze", "analyzing", "analyse", "analysing", "solve", "solving", "review", "reviewing",
                 "examine", "examining", "investigate", "investigating", "study", "studying",
                 "research", "researching"],
    "testing": ["test", "testing", "take", "taking", "answer", "answering", "complete", "completing",
                "attempt", "attempting", "try", "trying"],
    "creation": ["create", "creating", "write", "writing", "generate", "generating", "design", "designing",
                 "compose", "composing", "build", "building", "make", "making", "produce", "producing"],
    "voting": ["vote", "voting", "choose", "choosing", "select", "selecting", "pick", "picking",
               "decide", "deciding", "prefer", "preferring"],
    "debate": ["debate", "debating", "discuss", "discussing", "argue", "arguing", "deliberate",
               "deliberating", "consider", "considering"],
}

INPUT_TYPE_PATTERNS = {
    "test": ["test", "exam", "quiz", "assessment", "sat", "act", "gre", "gmat", "lsat", "mcat", "homework",
             "assignment", "worksheet", "problem set", "final", "midterm"],
    "video": ["video", "youtube", "tiktok", "clip", "movie", "film", "ad", "advertisement", "commercial",
              "trailer", "music video", "vlog", "stream", "broadcast"],
    "article": ["article", "news", "blog", "post", "story", "essay", "opinion", "editorial", "column"],
    "document": ["document", "file", "pdf", "paper", "report", "contract", "agreement", "legal", "brief",
                 "manuscript", "thesis", "dissertation"],
    "food": ["recipe", "dish", "meal", "food", "cuisine", "ingredient", "cooking", "restaurant", "menu",
             "flavor", "taste"],
    "product": ["product", "item", "app", "website", "service", "feature", "software", "game", "tool",
                "device", "gadget", "brand"],
    "data": ["data", "dataset", "spreadsheet", "csv", "json", "numbers", "statistics", "metrics", "analytics"],
}

DEMOGRAPHIC_PATTERNS = {
    "gen-z": ["gen z", "gen-z", "teenager", "teenagers", "teen", "teens", "young", "youth", "zoomer",
              "zoomers", "13-24", "high school", "college"],
    "millennial": ["millennial", "millennials", "20s", "30s", "young adult", "young adults", "25-40"],
    "gen-x": ["gen x", "gen-x", "40s", "50s", "middle age", "middle-aged", "41-56"],
    "boomer": ["boomer", "boomers", "baby boomer", "older adult", "60s", "70s", "57-75"],
    "senior": ["senior", "seniors", "elderly", "retired", "75+", "80s", "90s"],
}

WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
    "thirty": 30, "forty": 40, "fifty": 50, "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
    "hundred": 100, "thousand": 1000, "million": 1_000_000,
    "dozen": 12, "score": 20, "gross": 144,
}

OUTPUT_TYPES = {
    "rating": ("scores", "average"),
    "reaction": ("reactions", "sentiment"),
    "analysis": ("analysis", "consensus"),
    "testing": ("grades", "grades"),
    "creation": ("selections", "best-of"),
    "voting": ("consensus", "majority"),
    "debate": ("summary", "synthesis"),
    "custom": ("summary", "synthesis"),
}

INPUT_NODES = {
    "test": ("dataNode", "Test Questions", {"subType": "file", "description": "Upload test/exam questions"}),
    "video": ("contentUrlInputNode", "Video Content", {"description": "Paste video URL"}),
    "article": ("contentUrlInputNode", "Article", {"description": "Paste article URL"}),
    "document": ("dataNode", "Document", {"subType": "file", "description": "Upload document for review"}),
    "food": ("dataNode", "Recipe / Dish", {"subType": "text", "description": "Enter recipe or dish details"}),
    "product": ("dataNode", "Product Details", {"subType": "text", "description": "Enter product information"}),
    "data": ("dataNode", "Data Input", {"subType": "file", "description": "Upload your data"}),
    "custom": ("dataNode", "Input", {"subType": "text", "description": "Enter your input data"}),
}

AGGREGATOR_NODES = {
    "average": ("Score Calculator", "Calculates average scores from all"),
    "sentiment": ("Sentiment Aggregator", "Analyzes sentiment patterns from all"),
    "consensus": ("Consensus Builder", "Identifies common conclusions from all"),
    "grades": ("Grade Calculator", "Computes grades/scores from all"),
    "best-of": ("Best-of Selector", "Selects top outputs from all"),
    "majority": ("Vote Tally", "Tallies votes from all"),
    "synthesis": ("Argument Synthesizer", "Synthesizes perspectives from all"),
}

OUTPUT_LABELS = {
    "scores": "Score Report",
    "reactions": "Reaction Summary",
    "analysis": "Analysis Report",
    "grades": "Grade Report",
    "selections": "Top Selections",
    "consensus": "Final Decision",
    "summary": "Summary Report",
}

_DIRECT_COUNT_RE = re.compile(r"(\d+)\s+\w+")
_MULTIPLIER_RE = re.compile(
    r"(\d+|one|two|three|four|five|six|seven|eight|nine|ten)\s*(hundred|thousand|million)", re.IGNORECASE
)
_AGENT_NOUN_RE = re.compile(
    r"(?:\d+|hundred|thousand|million)\s+(\w+(?:\s+\w+)?)\s+(?:who\s+are\s+)?(?:\w+ing|\w+s?\s+(?:a|an|the))",
    re.IGNORECASE,
)
_SIMPLE_NOUN_RE = re.compile(r"(?:\d+|hundred|thousand|million)\s+(\w+)", re.IGNORECASE)


# ============================================================================
# Intent parsing
# ============================================================================


def extract_count(query: str) -> int:
    """Agent count from digits, "N hundred/thousand" or a number word; 10 when absent."""
    lower = query.lower()
    match = _DIRECT_COUNT_RE.search(lower)
    if match:
        return int(match.group(1))

    match = _MULTIPLIER_RE.search(lower)
    if match:
        base = match.group(1).lower()
        base_value = WORD_NUMBERS[base] if base in WORD_NUMBERS else int(base)
        return base_value * WORD_NUMBERS[match.group(2).lower()]

    for word, number in WORD_NUMBERS.items():
        if word in lower:
            return number
    return DEFAULT_AGENT_COUNT


def _noun_forms(noun: str, min_length: int) -> tuple[str, str]:
    singular = noun[:-1] if noun.endswith("s") and len(noun) > min_length else noun
    plural = noun if noun.endswith("s") else noun + "s"
    return singular, plural


def extract_agent_noun(query: str) -> tuple[str, str]:
    """``(singular, plural)`` of the noun after the count."""
    lower = query.lower()
    match = _AGENT_NOUN_RE.search(lower)
    if match:
        return _noun_forms(match.group(1).strip(), 2)
    match = _SIMPLE_NOUN_RE.search(lower)
    if match:
        return _noun_forms(match.group(1).strip(), 3)
    return "agent", "agents"


def naming_style(agent_noun: str) -> str:
    lower = agent_noun.lower()
    if any(p in lower for p in PROFESSIONAL_NOUNS):
        return "professional"
    if any(f in lower for f in FANTASY_NOUNS):
        return "fantasy"
    return "casual"


def detect_task_type(query: str) -> tuple[str, str]:
    """``(task_type, verb)`` for the first verb found; ``("custom", "processing")`` otherwise."""
    lower = query.lower()
    for task_type, verbs in TASK_VERB_PATTERNS.items():
        for verb in verbs:
            if verb in lower:
                return task_type, verb
    return "custom", "processing"


def _first_pattern(query: str, table: dict[str, list[str]]) -> str | None:
    lower = query.lower()
    for key, patterns in table.items():
        if any(p in lower for p in patterns):
            return key
    return None


def detect_input_type(query: str) -> str:
    return _first_pattern(query, INPUT_TYPE_PATTERNS) or "custom"


def detect_demographics(query: str) -> list[str] | None:
    lower = query.lower()
    found = [key for key, patterns in DEMOGRAPHIC_PATTERNS.items() if any(p in lower for p in patterns)]
    return found or None


def parse_intent(query: str) -> dict[str, Any]:
    count = extract_count(query)
    noun, plural = extract_agent_noun(query)
    task_type, verb = detect_task_type(query)
    input_type = detect_input_type(query)
    output_type, aggregation_type = OUTPUT_TYPES[task_type]

    workflow_type = "parallel-agents" if count > 1 else "simple"
    if input_type == "video":
        workflow_type = "content-analysis"

    return {
        "workflowType": workflow_type,
        "agentCount": count,
        "agentNoun": noun,
        "agentNounPlural": plural,
        "namingStyle": naming_style(noun),
        "taskDescription": query,
        "taskVerb": verb,
        "taskType": task_type,
        "inputType": input_type,
        "outputType": output_type,
        "aggregationType": aggregation_type,
        "demographicMix": detect_demographics(query),
    }


def _upper_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def _node(node_type: str, label: str, **payload: Any) -> dict[str, Any]:
    return {"type": node_type, "label": label, "payload": {"label": label, **payload}}


def workflow_name(intent: dict[str, Any]) -> str:
    noun = _upper_first(intent["agentNoun"])
    verb = _upper_first(intent["taskVerb"])
    count = intent["agentCount"]
    if intent["taskType"] == "testing" and intent["inputType"] == "test":
        return f"{count} {noun}s Test Simulation"
    if intent["taskType"] == "reaction" and intent["inputType"] == "video":
        return f"{count} {noun}s Video Reaction"
    if intent["taskType"] == "rating":
        return f"{count} {noun}s {verb} Session"
    return f"{count} {noun}s {verb} Workflow"


def build_skeleton(intent: dict[str, Any]) -> dict[str, Any]:
    """Input -> agent placeholder -> aggregator -> output."""
    count, plural = intent["agentCount"], intent["agentNounPlural"]

    input_type, input_label, input_payload = INPUT_NODES.get(intent["inputType"], INPUT_NODES["custom"])
    aggregator_label, aggregator_text = AGGREGATOR_NODES[intent["aggregationType"]]
    output_label = OUTPUT_LABELS[intent["outputType"]]

    nodes = [
        _node(input_type, input_label, **input_payload),
        {
            "type": "_agentPlaceholder",
            "label": f"{count} {plural}",
            "payload": {
                "agentCount": count,
                "agentNoun": intent["agentNoun"],
                "agentNounPlural": plural,
                "namingStyle": intent["namingStyle"],
                "taskType": intent["taskType"],
                "taskVerb": intent["taskVerb"],
                "demographicMix": intent["demographicMix"],
            },
        },
        _node(
            "analysisNode",
            aggregator_label,
            analysisType="aggregation",
            aggregationType=intent["aggregationType"],
            description=f"{aggregator_text} {count} {plural}",
        ),
        _node("outputNode", output_label, outputType=intent["outputType"]),
    ]

    return {
        "id": f"{intent['agentNoun']}-{intent['taskType']}-workflow-{int(time.time() * 1000)}",
        "name": workflow_name(intent),
        "description": f"{count} {plural}: {intent['taskDescription']}",
        "category": "analysis",
        "nodes": nodes,
        "connections": [{"from": 0, "to": 1}, {"from": 1, "to": 2}, {"from": 2, "to": 3}],
    }


# ============================================================================
# Agent tables
# ============================================================================

FIRST_NAMES = {
    "western": ["Emma", "Liam", "Olivia", "Noah", "Ava", "Ethan", "Sophia", "Mason", "Isabella", "William",
                "Mia", "James", "Charlotte", "Benjamin", "Amelia", "Lucas", "Harper", "Henry", "Evelyn",
                "Alexander", "Abigail", "Michael", "Emily", "Daniel", "Elizabeth", "Matthew", "Sofia", "David",
                "Victoria", "Joseph"],
    "asian": ["Wei", "Yuki", "Hiroshi", "Mei", "Kenji", "Sakura", "Chen", "Aiko", "Jin", "Hana", "Ryu", "Yuna",
              "Tao", "Sora", "Min", "Kaori", "Jing", "Akira", "Ling", "Haruto", "Yuki", "Takeshi", "Naomi",
              "Kazuki", "Hikaru", "Ren", "Ayumi", "Kenta", "Mika", "Shinji"],
    "latino": ["Sofia", "Mateo", "Valentina", "Santiago", "Camila", "Sebastian", "Lucia", "Diego", "Mariana",
               "Carlos", "Isabella", "Miguel", "Gabriela", "Alejandro", "Elena", "Andres", "Paula", "Juan",
               "Ana", "Luis", "Carmen", "Rafael", "Rosa", "Antonio", "Maria", "Fernando", "Adriana", "Ricardo",
               "Patricia", "Eduardo"],
    "african": ["Amara", "Kwame", "Zara", "Kofi", "Nia", "Jabari", "Aisha", "Malik", "Imani", "Darius",
                "Aaliyah", "Jamal", "Kira", "Marcus", "Zuri", "Xavier", "Keisha", "Andre", "Fatima", "Omar",
                "Ayo", "Chidi", "Adaeze", "Obinna", "Chioma", "Emeka", "Adanna", "Ngozi", "Ikenna", "Chiamaka"],
    "indian": ["Priya", "Arjun", "Ananya", "Rohan", "Diya", "Vikram", "Neha", "Aditya", "Riya", "Rahul", "Kavya",
               "Sanjay", "Ishita", "Amit", "Pooja", "Karan", "Shreya", "Dev", "Anisha", "Raj", "Sunita", "Vivek",
               "Meera", "Deepak", "Sneha", "Nikhil", "Tara", "Ashok", "Lakshmi", "Suresh"],
    "middleEastern": ["Layla", "Omar", "Sara", "Ahmed", "Noor", "Hassan", "Fatima", "Yusuf", "Mariam", "Ali",
                      "Leila", "Karim", "Zahra", "Tariq", "Hana", "Faris", "Amina", "Samir", "Yasmin", "Khalid",
                      "Rania", "Mustafa", "Dina", "Ibrahim", "Salma", "Rashid", "Lina", "Walid", "Mona", "Ziad"],
}

PROFESSIONAL_TITLES = ["Dr.", "Dr.", "Dr.", "Prof.", "Dr.", "PhD"]

SPECIALIZATIONS = {
    "scientist": ["Neuroscience", "Physics", "Chemistry", "Biology", "Computer Science", "Mathematics",
                  "Genetics", "Astronomy", "Ecology", "Biochemistry", "Materials Science", "Quantum Physics",
                  "Microbiology", "Oceanography", "Climatology"],
    "researcher": ["AI Research", "Data Science", "Cognitive Science", "Social Psychology", "Behavioral Economics",
                   "Epidemiology", "Genomics", "Robotics", "Machine Learning", "Computational Biology",
                   "Neurotechnology", "Drug Discovery", "Climate Modeling", "Quantum Computing", "Bioinformatics"],
    "doctor": ["Cardiology", "Neurology", "Oncology", "Pediatrics", "Surgery", "Internal Medicine", "Psychiatry",
               "Dermatology", "Radiology", "Anesthesiology", "Emergency Medicine", "Pathology", "Geriatrics",
               "Pulmonology", "Gastroenterology"],
    "lawyer": ["Corporate Law", "Criminal Law", "Intellectual Property", "Environmental Law", "Constitutional Law",
               "Tax Law", "Immigration Law", "Family Law", "Real Estate Law", "Employment Law",
               "International Law", "Healthcare Law", "Securities Law", "Antitrust Law", "Civil Rights Law"],
    "engineer": ["Software Engineering", "Mechanical Engineering", "Electrical Engineering", "Civil Engineering",
                 "Chemical Engineering", "Aerospace Engineering", "Biomedical Engineering",
                 "Environmental Engineering", "Nuclear Engineering", "Robotics Engineering", "AI Engineering",
                 "Systems Engineering", "Structural Engineering", "Marine Engineering", "Automotive Engineering"],
    "analyst": ["Data Analytics", "Financial Analysis", "Market Research", "Business Intelligence",
                "Risk Analysis", "Security Analysis", "Policy Analysis", "Systems Analysis",
                "Behavioral Analytics", "Competitive Intelligence", "Performance Analytics", "Predictive Modeling",
                "Trend Analysis", "Consumer Insights", "Operational Analysis"],
}
DEFAULT_SPECIALIZATIONS = [
    "General Practice", "Applied Research", "Field Study", "Theoretical Work", "Experimental Design",
    "Case Study", "Comparative Analysis", "Longitudinal Research", "Cross-sectional Study", "Meta-analysis",
    "Qualitative Research", "Quantitative Research", "Mixed Methods", "Action Research", "Ethnography",
]

FANTASY_NAMES = {
    "alien": ["Zyx-7", "Klatuu", "Xorbian", "Qwerty-9", "Nexar", "Theta-12", "Zephyx", "Kronax", "Vex-88",
              "Zillox", "Proxima", "Altair-6", "Rigel-X", "Vega-9", "Sirius-7", "Andromeda-3", "Orion-12",
              "Centauri-5", "Polaris-8", "Arcturus-2", "Betelgeuse-4", "Antares-11", "Deneb-6", "Capella-9",
              "Aldebaran-3", "Spica-7", "Regulus-5", "Fomalhaut-8", "Castor-2", "Pollux-4"],
    "robot": ["Unit-742", "R2-X9", "ARIA-3", "NEXUS-7", "PROTO-12", "ECHO-5", "ZETA-8", "OMEGA-1", "DELTA-6",
              "SIGMA-4", "TAU-9", "KAPPA-2", "THETA-7", "LAMBDA-3", "MU-11", "NU-8", "XI-5", "OMICRON-6", "PI-4",
              "RHO-9", "BETA-12", "GAMMA-7", "ALPHA-3", "EPSILON-8", "ETA-2", "IOTA-5", "PHI-11", "CHI-6",
              "PSI-4", "UPSILON-9"],
    "medieval": ["Sir Galahad", "Lady Morgana", "Baron Blackwood", "Dame Elara", "Lord Thorncastle",
                 "Lady Seraphina", "Sir Cedric", "Countess Ravenna", "Duke Alaric", "Princess Isolde",
                 "Sir Gareth", "Lady Rowena", "Earl Godric", "Baroness Lyanna", "Sir Percival", "Lady Guinevere",
                 "Lord Aldric", "Dame Beatrix", "Baron Oswald", "Countess Cordelia", "Sir Tristan",
                 "Lady Vivienne", "Duke Fenwick", "Princess Rosalind", "Earl Magnus", "Baroness Eloise",
                 "Lord Roderick", "Dame Astrid", "Baron Leopold", "Countess Madeleine"],
    "wizard": ["Zephyrus the Wise", "Morgath Shadowcaster", "Elindra Starweaver", "Theron the Ancient",
               "Seraphel Moonwhisper", "Aldric Flameheart", "Lunaria Crystalmind", "Oberon Stormcaller",
               "Celestia Nightveil", "Malachar the Grey", "Isadora Frostweave", "Thandril Runekeeper",
               "Avalon Mistwalker", "Xander Spellbinder", "Rowena Sunshadow", "Merrick Thornwood",
               "Sylvara Windchant", "Balthazar Darkholm", "Mirabel Lightbringer", "Caelum Voidwatcher",
               "Endora Earthshaper", "Finnian Firespirit", "Gwendolyn Dreamweaver", "Hadrian Stoneheart",
               "Ilyana Soulkeeper", "Jareth Shadowmend", "Kassandra Timekeeper", "Lysander Worldwalker",
               "Nephele Skyborn", "Oriana Spiritcaller"],
    "vampire": ["Count Dracul", "Lady Nyx", "Baron Sanguis", "Countess Crimson", "Lord Tenebris",
                "Duchess Nocturne", "Prince Vladislav", "Lady Scarlet", "Baron Nightshade", "Countess Vesper",
                "Duke Morbius", "Lady Raven", "Count Sanguine", "Baroness Midnight", "Lord Erebus",
                "Lady Carmilla", "Prince Lazarus", "Countess Lilith", "Baron Graves", "Duchess Obsidian",
                "Count Viktor", "Lady Anastasia", "Duke Constantine", "Baroness Selene", "Lord Damien",
                "Countess Aurora", "Prince Sebastian", "Lady Valentina", "Baron Mortimer", "Duchess Ophelia"],
    "pirate": ["Captain Blackbeard", "Admiral Scarlet", "First Mate Storm", "Quartermaster Drake",
               "Navigator Tide", "Captain Redhand", "Commodore Shadow", "Captain Ironside", "Admiral Tempest",
               "First Mate Bones", "Captain Cutlass", "Navigator Compass", "Quartermaster Gold", "Captain Savage",
               "Admiral Kraken", "First Mate Silver", "Captain Phantom", "Navigator Star", "Quartermaster Rum",
               "Captain Viper", "Admiral Thunder", "First Mate Hook", "Captain Marrow", "Navigator Moon",
               "Quartermaster Doubloon", "Captain Reef", "Admiral Corsair", "First Mate Anchor",
               "Captain Plunder", "Navigator Wave"],
    "ninja": ["Shadow Kaze", "Silent Ryu", "Phantom Hiro", "Ghost Akira", "Void Takeshi", "Eclipse Yuki",
              "Mist Kenji", "Serpent Shinji", "Storm Hayato", "Blade Masashi", "Smoke Tetsu", "Night Kaito",
              "Thunder Daichi", "Ice Yukio", "Fire Kazuma", "Wind Haruki", "Earth Sora", "Water Minato",
              "Lightning Raiden", "Steel Goro", "Shadow Sakura", "Silent Ayame", "Phantom Hanako", "Ghost Yuna",
              "Void Mei", "Eclipse Hana", "Mist Kiyomi", "Serpent Mika", "Storm Natsuki", "Blade Rin"],
    "superhero": ["Captain Valor", "The Phantom", "Crimson Guardian", "Silver Shadow", "Thunder Strike",
                  "Night Wing", "Cosmic Ray", "Steel Titan", "Blaze Runner", "Ice Queen", "Storm Chaser",
                  "Mind Master", "Power Surge", "Gravity Force", "Speed Demon", "Shield Bearer", "Fire Phoenix",
                  "Aqua Marine", "Earth Shaker", "Wind Walker", "Light Bringer", "Dark Knight", "Star Lord",
                  "Moon Goddess", "Sun Warrior", "Time Keeper", "Space Ranger", "Dimension Hopper",
                  "Reality Bender", "Fate Changer"],
}
DEFAULT_FANTASY_NAMES = [
    "Entity Alpha", "Spectre Beta", "Wraith Gamma", "Phantom Delta", "Spirit Epsilon", "Ghost Zeta",
    "Shadow Eta", "Shade Theta", "Specter Iota", "Revenant Kappa", "Apparition Lambda", "Vision Mu",
    "Presence Nu", "Essence Xi", "Being Omicron", "Form Pi", "Shape Rho", "Figure Sigma", "Outline Tau",
    "Silhouette Upsilon", "Enigma Phi", "Mystery Chi", "Puzzle Psi", "Riddle Omega", "Paradox Alpha-2",
    "Anomaly Beta-2", "Phenomenon Gamma-2", "Occurrence Delta-2", "Event Epsilon-2", "Instance Zeta-2",
]

# Related nouns that borrow a fantasy pool
FANTASY_ALIASES = [
    (("android", "cyborg", "ai"), "robot"),
    (("knight", "lord", "lady", "baron"), "medieval"),
    (("mage", "sorcerer", "witch"), "wizard"),
    (("samurai", "assassin"), "ninja"),
    (("hero", "villain", "mutant"), "superhero"),
]

DEMOGRAPHICS = {
    "gen-z": ("Gen Z", (13, 24)),
    "millennial": ("Millennial", (25, 40)),
    "gen-x": ("Gen X", (41, 56)),
    "boomer": ("Boomer", (57, 75)),
    "senior": ("Senior", (75, 95)),
}

PERSONALITY_TYPES = [
    "analytical", "creative", "social", "driver", "amiable",
    "expressive", "skeptical", "enthusiastic", "methodical", "intuitive",
]

OCCUPATION_TRAITS = {
    "chef": [
        ["classically trained", "innovative", "perfectionist", "flavor-obsessed"],
        ["comfort food lover", "experimental", "presentation-focused", "seasonal ingredients advocate"],
        ["fusion enthusiast", "traditionalist", "spice lover", "health-conscious cook"],
        ["pastry specialist", "grill master", "sauce expert", "farm-to-table advocate"],
    ],
    "teacher": [
        ["patient", "encouraging", "strict but fair", "innovative pedagogy"],
        ["student-centered", "lecture-style", "hands-on learner advocate", "technology integrator"],
        ["nurturing", "challenging", "supportive", "assessment-focused"],
        ["collaborative", "independent study advocate", "project-based", "differentiated instruction"],
    ],
    "critic": [
        ["harsh but fair", "encouraging", "detail-oriented", "big-picture focused"],
        ["traditionalist", "avant-garde appreciator", "populist", "elitist"],
        ["verbose", "concise", "analytical", "emotional responder"],
        ["constructive", "blunt", "diplomatic", "provocative"],
    ],
    "student": [
        ["diligent", "perfectionist", "anxious about grades", "thorough"],
        ["balanced", "occasionally distracted", "decent effort", "social learner"],
        ["unconventional answers", "artistic", "sometimes off-topic", "imaginative"],
        ["needs extra time", "guesses often", "distracted", "uncertain"],
    ],
}
DEFAULT_TRAITS = [
    ["analytical", "thorough", "detail-oriented", "systematic"],
    ["creative", "innovative", "outside-the-box thinker", "visionary"],
    ["practical", "results-oriented", "efficient", "pragmatic"],
    ["collaborative", "team player", "communicative", "supportive"],
]

BEHAVIOR_TEMPLATES = {
    "rating": "{name} will {verb} the content on a scale of 1-10, providing detailed justification "
              "based on their {traits} perspective{expertise}.",
    "reaction": "{name} will watch/experience the content and provide their genuine reaction, "
                "influenced by their {traits} nature{expertise}.",
    "analysis": "{name} will analyze the material using their {traits} approach{expertise}, identifying key "
                "points and providing thoughtful recommendations.",
    "testing": "{name} will attempt to answer the questions, with performance influenced by their "
               "{traits} characteristics{expertise}.",
    "creation": "{name} will create/generate content based on the input, reflecting their unique "
                "{traits} style{expertise}.",
    "voting": "{name} will make their selection based on their {traits} preferences{expertise}, explaining "
              "their choice.",
    "debate": "{name} will present their perspective on the topic, drawing from their {traits} "
              "viewpoint{expertise}.",
    "custom": "{name} will process the input as a {noun}, applying their {traits} approach{expertise}.",
}


# ============================================================================
# Agent generation
# ============================================================================


def human_name(index: int) -> tuple[str, str]:
    """``(first_name, cultural_background)``; backgrounds rotate with the index."""
    backgrounds = list(FIRST_NAMES)
    background = backgrounds[index % len(backgrounds)]
    names = FIRST_NAMES[background]
    return names[(index // len(backgrounds)) % len(names)], background


def fantasy_name(agent_noun: str, index: int) -> str:
    lower = agent_noun.lower()
    for category, names in FANTASY_NAMES.items():
        if category in lower:
            return names[index % len(names)]
    for aliases, category in FANTASY_ALIASES:
        if any(a in lower for a in aliases):
            names = FANTASY_NAMES[category]
            return names[index % len(names)]
    return DEFAULT_FANTASY_NAMES[index % len(DEFAULT_FANTASY_NAMES)]


def specialization(agent_noun: str, index: int) -> str:
    lower = agent_noun.lower()
    pool = next((s for p, s in SPECIALIZATIONS.items() if p in lower), DEFAULT_SPECIALIZATIONS)
    return pool[index % len(pool)]


def occupation_traits(agent_noun: str, index: int) -> list[str]:
    lower = agent_noun.lower()
    trait_sets = next((t for o, t in OCCUPATION_TRAITS.items() if o in lower), DEFAULT_TRAITS)
    return trait_sets[index % len(trait_sets)][:2]


def behavior(
    name: str, agent_noun: str, task_type: str, verb: str, traits: list[str], expertise: str | None
) -> str:
    template = BEHAVIOR_TEMPLATES.get(task_type, BEHAVIOR_TEMPLATES["custom"])
    return template.format(
        name=name,
        verb=verb,
        noun=agent_noun,
        traits=" and ".join(traits),
        expertise=f" with expertise in {expertise}" if expertise else "",
    )


class BatchRequest(BaseModel):
    batchNumber: int = 0
    batchSize: int = AGENTS_PER_BATCH
    totalCount: int = 0
    agentNoun: str = "agent"
    agentNounPlural: str = "agents"
    namingStyle: NamingStyle = "casual"
    taskType: TaskType = "custom"
    taskVerb: str = "processing"
    taskContext: str | None = None
    demographicMix: list[str] | None = None


def generate_agent(index: int, body: BatchRequest) -> dict[str, Any]:
    """Brain node for agent number ``index`` (0-based across all batches)."""
    noun = body.agentNoun
    keys = body.demographicMix or list(DEMOGRAPHICS)
    age_group, (min_age, max_age) = DEMOGRAPHICS.get(keys[index % len(keys)], DEMOGRAPHICS["millennial"])
    traits = occupation_traits(noun, index)

    title = expertise = None
    if body.namingStyle == "professional":
        first_name, background = human_name(index)
        title = PROFESSIONAL_TITLES[index % len(PROFESSIONAL_TITLES)]
        expertise = specialization(noun, index)
        display_name = f"{title} {first_name}"
    elif body.namingStyle == "fantasy":
        display_name = first_name = fantasy_name(noun, index)
        background = "fantasy"
    elif body.namingStyle == "numbered":
        display_name = first_name = f"{_upper_first(noun)}-{index + 1:04d}"
        background = "synthetic"
    else:
        first_name, background = human_name(index)
        display_name = first_name

    persona: dict[str, Any] = {
        "name": first_name,
        "displayName": display_name,
        "culturalBackground": background,
        "ageGroup": age_group,
        "age": random.randint(min_age, max_age),
        "personality": random.choice(PERSONALITY_TYPES),
        "traits": traits,
    }
    if expertise:
        persona["specialization"] = expertise
    if title:
        persona["title"] = title

    label = f"{_upper_first(noun)} {index + 1} - {display_name}"
    return {
        "type": "brainNode",
        "label": label,
        "payload": {
            "label": label,
            "agentNoun": noun,
            "persona": persona,
            "behavior": behavior(display_name, noun, body.taskType, body.taskVerb, traits, expertise),
        },
    }


# ============================================================================
# Routes
# ============================================================================


class ParseRequest(BaseModel):
    query: str | None = None


@router.post("/generate/parse")
async def parse_workflow_request(body: ParseRequest):
    """Parse a natural-language request into an intent and a workflow skeleton."""
    if not body.query or not body.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")

    intent = parse_intent(body.query)
    logger.info(
        "Parsed wizard intent: %d %s (%s, %s, input=%s)",
        intent["agentCount"],
        intent["agentNounPlural"],
        intent["namingStyle"],
        intent["taskType"],
        intent["inputType"],
    )
    return {
        "success": True,
        "intent": intent,
        "skeleton": build_skeleton(intent),
        "needsBatchGeneration": intent["agentCount"] > 1,
        "estimatedBatches": math.ceil(intent["agentCount"] / AGENTS_PER_BATCH),
    }


@router.post("/generate/batch")
def generate_agent_batch(body: BatchRequest):
    """Generate one batch of agent nodes."""
    if body.batchNumber < 0 or body.batchSize <= 0 or body.totalCount <= 0:
        raise HTTPException(status_code=400, detail="Invalid batch parameters")

    start = body.batchNumber * body.batchSize
    end = min(start + body.batchSize, body.totalCount)
    if end <= start:
        return {
            "agents": [],
            "isComplete": True,
            "progress": {"current": body.totalCount, "total": body.totalCount},
        }

    logger.info(
        "Generating batch %d: %d %s (%s naming)",
        body.batchNumber + 1,
        end - start,
        body.agentNounPlural,
        body.namingStyle,
    )
    agents = [generate_agent(index, body) for index in range(start, end)]
    return {
        "success": True,
        "agents": agents,
        "batchNumber": body.batchNumber,
        "isComplete": end >= body.totalCount,
        "progress": {
            "current": end,
            "total": body.totalCount,
            "percentage": math.floor(end / body.totalCount * 100 + 0.5),
        },
    }
