from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from sqlalchemy.orm import Session

from garson.models.menu_category import MenuCategory
from garson.models.menu_item import MenuItem
from garson.models.menu_item_modifier_group import MenuItemModifierGroup
from garson.models.menu_synonym import MenuSynonym
from garson.models.modifier import Modifier
from garson.models.modifier_group import SELECTION_MULTI, ModifierGroup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MenuItemSnapshot:
    id: int
    name: str
    price_cents: int
    category: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class SynonymSnapshot:
    menu_item_id: int
    phrase: str
    weight: float


@dataclass(frozen=True)
class OptionSnapshot:
    id: int
    name: str
    price_delta_cents: int
    is_default: bool = False


@dataclass(frozen=True)
class OptionGroup:
    id: int
    name: str
    selection_type: str
    required: bool
    options: tuple[OptionSnapshot, ...]

    @property
    def is_multi(self) -> bool:
        return self.selection_type == SELECTION_MULTI

    def option(self, option_id: int) -> OptionSnapshot | None:
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    def default_option(self) -> OptionSnapshot | None:
        for option in self.options:
            if option.is_default:
                return option
        return None


@dataclass(frozen=True)
class OptionGroupSnapshot:
    """Items and option groups frozen at extraction time.

    Later catalog edits cannot change what a running turn validates against.
    """

    items: Mapping[int, MenuItemSnapshot]
    groups_by_item: Mapping[int, tuple[OptionGroup, ...]]

    def groups_for(self, menu_item_id: int) -> tuple[OptionGroup, ...]:
        return self.groups_by_item.get(menu_item_id, ())

    def find_option(self, menu_item_id: int, option_id: int) -> tuple[OptionGroup, OptionSnapshot] | None:
        for group in self.groups_for(menu_item_id):
            option = group.option(option_id)
            if option is not None:
                return group, option
        return None

    def to_prompt_dict(self) -> list[dict]:
        payload = []
        for item_id, groups in self.groups_by_item.items():
            for group in groups:
                payload.append(
                    {
                        "menu_item_id": item_id,
                        "group_id": group.id,
                        "group": group.name,
                        "type": group.selection_type,
                        "required": group.required,
                        "options": [
                            {"id": option.id, "name": option.name, "price_delta_cents": option.price_delta_cents}
                            for option in group.options
                        ],
                    }
                )
        return payload


EMPTY_SNAPSHOT = OptionGroupSnapshot(items=MappingProxyType({}), groups_by_item=MappingProxyType({}))


class MenuCatalog:
    """Read-only view over the tenant's published menu tables."""

    def get_active_menu_items(self, db: Session, tenant_id: int) -> list[MenuItemSnapshot]:
        rows = (
            db.query(MenuItem, MenuCategory.name)
            .outerjoin(MenuCategory, MenuCategory.id == MenuItem.category_id)
            .filter(MenuItem.tenant_id == tenant_id, MenuItem.active.is_(True))
            .order_by(MenuItem.id.asc())
            .all()
        )
        return [
            MenuItemSnapshot(
                id=item.id,
                name=item.name,
                price_cents=int(item.price_cents or 0),
                category=category_name,
                description=item.description,
            )
            for item, category_name in rows
        ]

    def get_synonyms(self, db: Session, tenant_id: int) -> list[SynonymSnapshot]:
        rows = (
            db.query(MenuSynonym)
            .filter(MenuSynonym.tenant_id == tenant_id)
            .order_by(MenuSynonym.id.asc())
            .all()
        )
        return [
            SynonymSnapshot(menu_item_id=row.menu_item_id, phrase=row.phrase, weight=float(row.weight or 0.0))
            for row in rows
        ]

    def get_option_groups(self, db: Session, tenant_id: int, item_ids: Iterable[int]) -> OptionGroupSnapshot:
        item_ids = sorted({int(item_id) for item_id in item_ids})
        if not item_ids:
            return EMPTY_SNAPSHOT

        wanted = set(item_ids)
        items = {item.id: item for item in self.get_active_menu_items(db, tenant_id) if item.id in wanted}

        links = (
            db.query(MenuItemModifierGroup, ModifierGroup)
            .join(ModifierGroup, ModifierGroup.id == MenuItemModifierGroup.modifier_group_id)
            .filter(
                MenuItemModifierGroup.tenant_id == tenant_id,
                MenuItemModifierGroup.menu_item_id.in_(item_ids),
                ModifierGroup.tenant_id == tenant_id,
                ModifierGroup.active.is_(True),
            )
            .order_by(MenuItemModifierGroup.sort_order.asc(), ModifierGroup.order_index.asc(), ModifierGroup.id.asc())
            .all()
        )
        group_ids = sorted({group.id for _, group in links})
        options_by_group: dict[int, list[OptionSnapshot]] = {}
        if group_ids:
            option_rows = (
                db.query(Modifier)
                .filter(
                    Modifier.tenant_id == tenant_id,
                    Modifier.group_id.in_(group_ids),
                    Modifier.active.is_(True),
                )
                .order_by(Modifier.order_index.asc(), Modifier.id.asc())
                .all()
            )
            for row in option_rows:
                options_by_group.setdefault(row.group_id, []).append(
                    OptionSnapshot(
                        id=row.id,
                        name=row.name,
                        price_delta_cents=int(row.price_cents or 0),
                        is_default=bool(row.is_default),
                    )
                )

        groups_by_item: dict[int, list[OptionGroup]] = {}
        for link, group in links:
            if link.menu_item_id not in items:
                continue
            groups_by_item.setdefault(link.menu_item_id, []).append(
                OptionGroup(
                    id=group.id,
                    name=group.name,
                    selection_type=group.selection_type,
                    required=bool(group.required),
                    options=tuple(options_by_group.get(group.id, [])),
                )
            )

        return OptionGroupSnapshot(
            items=MappingProxyType(dict(items)),
            groups_by_item=MappingProxyType({key: tuple(value) for key, value in groups_by_item.items()}),
        )
