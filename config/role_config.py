"""
Role keyword configuration - replaceable per deployment

Pipeline and stage names are operator-editable free text. A deployment
describes how those names map to engine roles by providing its own
RoleKeywordConfig; the default targets the Romanian workshop layout.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Tuple


@dataclass(frozen=True)
class KeywordRule:
    """Keyword test applied to an already-normalized name.

    A name matches when it equals one of ``exact``, or contains every
    keyword of at least one group in ``all_of``, and contains none of
    ``exclude``.
    """
    all_of: Tuple[Tuple[str, ...], ...] = ()
    exact: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()

    def test(self, normalized: str) -> bool:
        if normalized in self.exact:
            return True
        if any(word in normalized for word in self.exclude):
            return False
        return any(
            all(word in normalized for word in group) for group in self.all_of
        )


def _any(*groups: str) -> Tuple[Tuple[str, ...], ...]:
    """Shorthand: each argument is a space-separated all-of group."""
    return tuple(tuple(group.split()) for group in groups)


class RoleKeywordConfig(ABC):
    """Role keyword configuration base class"""

    @abstractmethod
    def get_pipeline_rules(self) -> Dict[str, KeywordRule]:
        """Pipeline role value -> keyword rule"""
        pass

    @abstractmethod
    def get_stage_rules(self) -> Dict[str, KeywordRule]:
        """Stage role value -> keyword rule"""
        pass

    @abstractmethod
    def get_default_pipelines(self) -> List[Dict[str, Any]]:
        """Pipeline layout seeded into an empty database"""
        pass


class WorkshopRoleConfig(RoleKeywordConfig):
    """Repair workshop layout (Vânzări / Receptie / Arhivare)"""

    def get_pipeline_rules(self) -> Dict[str, KeywordRule]:
        return {
            "sales": KeywordRule(all_of=_any("vanzari", "sales")),
            "reception": KeywordRule(all_of=_any("receptie", "reception")),
            "archive": KeywordRule(all_of=_any("arhivare", "archive")),
        }

    def get_stage_rules(self) -> Dict[str, KeywordRule]:
        return {
            "archive_leads": KeywordRule(all_of=_any("leaduri")),
            "archive_files": KeywordRule(all_of=_any("fise")),
            "archive_trays": KeywordRule(all_of=_any("tavite")),
            "callback": KeywordRule(
                all_of=_any("callback", "call back", "call-back")
            ),
            "no_answer": KeywordRule(
                all_of=_any("nu raspunde", "nu rasunde", "no answer")
            ),
            "courier_sent": KeywordRule(
                all_of=_any("curier trimis", "curier_trimis", "courier sent")
            ),
            "office_direct": KeywordRule(all_of=_any("office direct")),
            "order_confirmed": KeywordRule(
                all_of=_any("avem comanda", "avem-comanda", "order confirmed")
            ),
            "package_arrived": KeywordRule(
                all_of=_any("colet ajuns", "colet_ajuns", "package arrived")
            ),
            "package_unclaimed": KeywordRule(
                all_of=_any("colet neridicat", "package unclaimed")
            ),
            "no_deal": KeywordRule(all_of=_any("no deal", "no-deal")),
            "archived": KeywordRule(all_of=_any("arhivat", "archived")),
            "invoiced": KeywordRule(
                all_of=_any("facturat", "invoiced"), exclude=("de facturat",)
            ),
            "leads": KeywordRule(
                all_of=_any("lead"), exact=("leads",), exclude=("callback",)
            ),
        }

    def get_default_pipelines(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": "Vânzări",
                "stages": [
                    "Leads", "Call Back", "Nu Răspunde", "Curier Trimis",
                    "Office Direct", "Avem Comandă", "Colet Ajuns",
                    "Colet Neridicat", "No Deal", "Arhivat",
                ],
            },
            {
                "name": "Receptie",
                "stages": [
                    "Noua", "Curier Trimis", "Colet Ajuns", "In Lucru",
                    "De Facturat", "Facturat",
                ],
            },
            {
                "name": "Arhivare",
                "stages": ["Leaduri", "Fișe", "Tăvițe"],
            },
        ]


# Global role configuration instance (replace at startup for other layouts)
role_config: RoleKeywordConfig = WorkshopRoleConfig()
