from __future__ import annotations

from typing import Any, Sequence

from garson.services.menu_candidates import MenuCandidate
from garson.services.menu_catalog import OptionGroupSnapshot
from garson.services.message_templates import format_price

# Kept byte-stable across requests so provider-side prompt caching applies.
EXTRACTION_SYSTEM_PROMPT = """Sen bir restoran sipariş asistanısın. Müşterinin mesajından sipariş detaylarını çıkarırsın.

GÖREV:
1. Müşterinin mesajını analiz et.
2. Sadece verilen MENÜ ADAYLARI içinden sipariş edilen ürünleri belirle.
3. Miktarları, seçenekleri (option_ids) ve ekstra istekleri (notes) çıkar.
4. Belirsizlik varsa clarification_question ile kısa bir soru sor.

KURALLAR:
- menu_item_id ve option_ids değerleri yalnızca adaylarda verilen id'ler olabilir.
- Miktar belirtilmemişse 1 kabul et.
- "tek seç" gruplarından en fazla bir seçenek seç.
- Güven skoru (confidence):
  0.9-1.0 sipariş tamamen net, 0.7-0.9 küçük varsayımlar var,
  0.5-0.7 belirsizlik var, 0.0-0.5 çok belirsiz (mutlaka soru sor).
"""

UPSELL_SYSTEM_PROMPT = """Sen bir restoran chatbotusun. Müşteriye çapraz satış önerisi yapacaksın.
Kurallar:
- Samimi, esprili, arkadaşça tonda yaz.
- Türkçe ve kısa yaz (en fazla 2 cümle).
- En fazla 1 emoji kullan.
- Müşterinin adı varsa kullan.
- Fiyatı doğal şekilde belirt.
- Baskıcı olma, sadece teklif et.
- Sadece mesaj metnini yaz.

Örnekler:
- "Sütlacı unuttun sanki :) sadece 8 TL!"
- "Döner yanına bir ayran ne gider be! 🥛 5 TL"
"""


def build_candidates_prompt(candidates: Sequence[MenuCandidate], option_groups: OptionGroupSnapshot) -> str:
    if not candidates:
        return "MENÜ ADAYLARI: Menüde eşleşen ürün bulunamadı."

    lines = ["MENÜ ADAYLARI:"]
    for candidate in candidates:
        item = option_groups.items.get(candidate.menu_item_id)
        category = f" ({item.category})" if item is not None and item.category else ""
        line = f"[{candidate.menu_item_id}] {candidate.name}{category} - {format_price(candidate.price_cents)}"
        if candidate.match_type != "exact":
            line += f" (eşleşen: {candidate.matched_phrase})"
        lines.append(line)

        for group in option_groups.groups_for(candidate.menu_item_id):
            required = " (zorunlu)" if group.required else ""
            kind = "çoklu seç" if group.is_multi else "tek seç"
            options = ", ".join(
                f"[{option.id}] {option.name}"
                + (f" +{format_price(option.price_delta_cents)}" if option.price_delta_cents > 0 else "")
                + (" (varsayılan)" if option.is_default else "")
                for option in group.options
            )
            lines.append(f"  - {group.name}{required} [{kind}]: {options}")
    return "\n".join(lines)


def build_extraction_messages(
    text: str,
    candidates: Sequence[MenuCandidate],
    option_groups: OptionGroupSnapshot,
    history: Sequence[dict[str, str]],
) -> list[dict[str, str]]:
    messages = [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {"role": "system", "content": build_candidates_prompt(candidates, option_groups)},
    ]
    for entry in history:
        role = entry.get("role")
        content = entry.get("content")
        if role in {"user", "assistant"} and content:
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": text})
    return messages


def build_upsell_messages(prompt_context: dict[str, Any]) -> list[dict[str, str]]:
    customer = prompt_context.get("customer_name") or "Misafir"
    current = ", ".join(prompt_context.get("current_items") or [])
    user_prompt = "\n".join(
        [
            f"Müşteri: {customer}",
            f"Mevcut sepet: {current}",
            f"Önerilen ürün: {prompt_context.get('item_name')} ({format_price(int(prompt_context.get('price_cents') or 0))})",
            f"Müşteri bu ürünü daha önce {int(prompt_context.get('previous_count') or 0)} kez sipariş etmiş.",
            "Samimi bir çapraz satış mesajı yaz.",
        ]
    )
    return [
        {"role": "system", "content": UPSELL_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
