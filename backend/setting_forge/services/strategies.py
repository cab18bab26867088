"""Built-in generation strategies: tree shape hints and strategy-level checks."""
import logging
from typing import Optional
from pydantic import BaseModel, Field

from setting_forge.models import GenerationSession, SettingType


logger = logging.getLogger(__name__)


class NodeTemplate(BaseModel):
    """A category the strategy expects to see in the tree."""
    name: str
    type: SettingType
    description: str


class GenerationStrategy(BaseModel):
    """Configuration that shapes one kind of setting tree."""
    id: str
    name: str
    description: str
    expected_root_nodes: int = 0
    max_depth: int = 5
    preferred_batch_size: int = 8
    min_description_length: int = 30
    max_description_length: int = 300
    require_inter_connections: bool = True
    node_templates: list[NodeTemplate] = Field(default_factory=list)

    def templates_info(self) -> str:
        return "\n".join(
            f"**{t.name}** [{t.type.value}]: {t.description}" for t in self.node_templates
        ) or "(no fixed categories)"

    def rules_info(self) -> str:
        return (
            f"- Preferred nodes per batch: {self.preferred_batch_size}\n"
            f"- Description length: {self.min_description_length}-{self.max_description_length} characters\n"
            f"- Maximum tree depth: {self.max_depth}\n"
            f"- Nodes should reference each other: {'yes' if self.require_inter_connections else 'no'}"
        )

    def validate_node(self, session: GenerationSession, parent_id: Optional[str]) -> Optional[str]:
        """Strategy-level check. Returns an error message or None."""
        depth = session.depth_of(parent_id)
        if depth > self.max_depth:
            return f"Node depth {depth} exceeds the maximum depth {self.max_depth} of strategy '{self.id}'"
        return None


DEFAULT_STRATEGY = GenerationStrategy(
    id="default",
    name="Balanced world-building",
    description="A general setting tree covering world, characters, factions and conflicts.",
    expected_root_nodes=6,
    max_depth=5,
    node_templates=[
        NodeTemplate(name="Worldview", type=SettingType.WORLDVIEW,
                     description="The shape of the world and its fundamental rules."),
        NodeTemplate(name="Geography", type=SettingType.GEOGRAPHY,
                     description="Regions, cities and landmarks that matter to the plot."),
        NodeTemplate(name="Factions", type=SettingType.FACTION,
                     description="Powers in conflict and what they want."),
        NodeTemplate(name="Characters", type=SettingType.CHARACTER,
                     description="Protagonists, antagonists and key supporting cast."),
        NodeTemplate(name="Power system", type=SettingType.POWER_SYSTEM,
                     description="How power, magic or technology works and what it costs."),
        NodeTemplate(name="Main conflict", type=SettingType.EVENT,
                     description="The central conflict and the events that drive it."),
    ],
)

CULTIVATION_STRATEGY = GenerationStrategy(
    id="cultivation",
    name="Cultivation web novel",
    description="Progression fantasy: cultivation realms, sects, golden finger and reader hooks.",
    expected_root_nodes=7,
    max_depth=4,
    preferred_batch_size=10,
    node_templates=[
        NodeTemplate(name="Cultivation realms", type=SettingType.POWER_SYSTEM,
                     description="Realm ladder, breakthroughs and their costs."),
        NodeTemplate(name="Golden finger", type=SettingType.GOLDEN_FINGER,
                     description="The protagonist's unique advantage and its limits."),
        NodeTemplate(name="Sects and clans", type=SettingType.FACTION,
                     description="Sects, clans and their rivalries."),
        NodeTemplate(name="Protagonist", type=SettingType.CHARACTER,
                     description="Origin, motivation and growth arc."),
        NodeTemplate(name="Pleasure points", type=SettingType.PLEASURE_POINT,
                     description="Face-slapping moments and payoffs readers wait for."),
        NodeTemplate(name="Anticipation hooks", type=SettingType.ANTICIPATION_HOOK,
                     description="Mysteries and promises that keep readers going."),
        NodeTemplate(name="World map", type=SettingType.GEOGRAPHY,
                     description="Continents, secret realms and forbidden zones."),
    ],
)

MYSTERY_STRATEGY = GenerationStrategy(
    id="mystery",
    name="Mystery and suspense",
    description="Cases, suspects, clues and the timeline behind the crime.",
    expected_root_nodes=5,
    max_depth=4,
    node_templates=[
        NodeTemplate(name="Central case", type=SettingType.EVENT,
                     description="What happened, when, and what it looked like."),
        NodeTemplate(name="Investigator", type=SettingType.CHARACTER,
                     description="The detective and their method."),
        NodeTemplate(name="Suspects", type=SettingType.CHARACTER,
                     description="Suspects with motives and alibis."),
        NodeTemplate(name="Clues", type=SettingType.ITEM,
                     description="Physical and testimonial clues, true and false."),
        NodeTemplate(name="Timeline", type=SettingType.TIMELINE,
                     description="The real sequence of events behind the case."),
    ],
)


class StrategyRegistry:
    """Lookup of strategies by id or prompt template id."""

    def __init__(self, strategies: list[GenerationStrategy] | None = None):
        self._strategies: dict[str, GenerationStrategy] = {}
        for strategy in strategies or [DEFAULT_STRATEGY, CULTIVATION_STRATEGY, MYSTERY_STRATEGY]:
            self.register(strategy)

    def register(self, strategy: GenerationStrategy, *aliases: str):
        self._strategies[strategy.id] = strategy
        for alias in aliases:
            self._strategies[alias] = strategy

    def get(self, strategy_id: Optional[str]) -> GenerationStrategy:
        """Resolve a strategy, falling back to the default one."""
        if strategy_id and strategy_id in self._strategies:
            return self._strategies[strategy_id]
        if strategy_id:
            logger.info("Unknown strategy '%s', using default", strategy_id)
        return self._strategies.get(DEFAULT_STRATEGY.id, DEFAULT_STRATEGY)

    def list_all(self) -> list[GenerationStrategy]:
        seen = {}
        for strategy in self._strategies.values():
            seen.setdefault(strategy.id, strategy)
        return list(seen.values())
