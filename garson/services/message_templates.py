from __future__ import annotations

from typing import Any, Sequence

TEMPLATES: dict[str, str] = {
    "greeting": (
        "Merhaba{customer_name}! 👋 Garson'a hoş geldiniz.\n"
        "Siparişinizi yazabilirsiniz, örn: *2 tavuk döner, bir de ayran*.\n"
        "Menüyü görmek için *menü* yazın."
    ),
    "menu_header": "📋 *Menümüz*",
    "menu_footer": "Sipariş vermek için ürün adını ve adedini yazmanız yeterli.",
    "menu_empty": "Şu anda menümüzde ürün bulunmuyor. 🙏",
    "items_added": "✅ Sepete eklendi:\n{lines}",
    "cart_empty": "Sepetiniz şu an boş. Sipariş vermek için ürün yazabilirsiniz.",
    "order_summary": "🧾 *Sepetiniz*\n{lines}\n\nAra toplam: {items_total}",
    "order_summary_footer": "Siparişi tamamlamak için *tamam* yazın, eklemek için ürün yazmaya devam edin.",
    "option_question": "*{item_name}* için {group_name} seçer misiniz?",
    "option_question_list": "*{item_name}* için {group_name} seçer misiniz? Seçenekler: {options}",
    "clarify": "Tam anlayamadım 🤔 {question}",
    "clarify_generic": (
        "Üzgünüm, tam anlayamadım. Ürün adını ve adedini yazabilir misiniz? "
        "Menü için *menü* yazabilirsiniz."
    ),
    "extraction_unavailable": (
        "Üzgünüz, şu anda mesajınızı işleyemiyoruz. 🙏 Birazdan tekrar dener misiniz?"
    ),
    "turn_failed": "Üzgünüz, bir sorun oluştu. 🙏 Lütfen tekrar deneyin.",
    "location_request": "📍 Teslimat için konumunuzu paylaşır mısınız?",
    "location_unexpected": (
        "Konumunuzu aldık ama henüz siparişiniz hazır değil. "
        "Önce ürünleri yazıp *tamam* ile onaylayın, sonra konum isteyeceğiz."
    ),
    "location_outside": "❌ {message}\n\nLütfen farklı bir konum gönderin veya *iptal* yazın.",
    "location_confirmed": (
        "✅ *{store_name}* şubemizden teslimat yapılacak.\n"
        "📏 Mesafe: {distance} km\n"
        "🚚 Teslimat ücreti: {delivery_fee}\n"
        "💰 Genel toplam: {total}"
    ),
    "min_basket": (
        "⚠️ Minimum sepet tutarı {min_basket}. Mevcut sepetiniz: {current_total}.\n"
        "Lütfen ürün ekleyin veya *iptal* yazın."
    ),
    "payment_method": "Nasıl ödemek istersiniz?",
    "payment_method_expected": "Lütfen ödeme yöntemini seçin: *nakit* veya *kart*.",
    "upsell_answer_expected": "Eklemek ister misiniz? *Evet* ya da *Hayır* diyebilirsiniz.",
    "upsell_added": "👍 {item_name} sepete eklendi.",
    "payment_link": (
        "💳 Kredi kartı ile ödeme için aşağıdaki linke tıklayın:\n\n{url}\n\n"
        "Nakit ödemek için *nakit* yazabilirsiniz."
    ),
    "payment_pending": "⏳ Ödemeniz bekleniyor. Ödeme linkiniz: {url}",
    "payment_success": "✅ *Ödemeniz alındı!*\n📦 Sipariş No: #{order_id}\nAfiyet olsun! 🍽️",
    "cash_confirmed": "✅ *Siparişiniz alındı!*\n📦 Sipariş No: #{order_id}\n💵 Ödeme: Kapıda nakit",
    "payment_failed": "❌ Ödeme başarısız oldu. Başka bir ödeme yöntemi seçer misiniz?",
    "order_cancelled": "❌ Siparişiniz iptal edildi. Yeni sipariş için ürün yazabilirsiniz.",
    "nothing_to_cancel": "İptal edilecek bir siparişiniz yok.",
    "reset": "🔄 Sohbet sıfırlandı. Yeni sipariş için ürün yazabilirsiniz.",
    "upsell_first_time": "{name}{first_item} yanına {item_name} ne gider be! 😄 {price}",
    "upsell_repeat": "{name}{item_name}'i unuttun sanki :) sadece {price}!",
}

BUTTON_LABELS = {
    "pay_cash": "Nakit",
    "pay_card": "Kredi Kartı",
    "upsell_accept": "Evet, ekle",
    "upsell_reject": "Hayır, teşekkürler",
}


def render(template_name: str, **values: Any) -> str:
    return TEMPLATES[template_name].format(**values)


def format_price(cents: int) -> str:
    value = int(cents or 0) / 100
    if value == int(value):
        return f"{int(value)} TL"
    return f"{value:.2f}".replace(".", ",") + " TL"


def format_line(quantity: int, name: str, subtotal_cents: int, options: Sequence[str] = (), notes: str | None = None) -> str:
    line = f"  {quantity}x {name}"
    if options:
        line += f" ({', '.join(options)})"
    line += f" - {format_price(subtotal_cents)}"
    if notes:
        line += f"\n    Not: {notes}"
    return line


def greeting(customer_name: str | None) -> str:
    return render("greeting", customer_name=f" {customer_name}" if customer_name else "")


def upsell_fallback(
    *,
    item_name: str,
    price_cents: int,
    current_items: Sequence[str],
    customer_name: str | None,
    previous_count: int,
) -> str:
    name = f"{customer_name}, " if customer_name else ""
    price = format_price(price_cents)
    if previous_count > 0:
        return render("upsell_repeat", name=name, item_name=item_name, price=price)
    first_item = current_items[0] if current_items else "Siparişin"
    return render("upsell_first_time", name=name, first_item=first_item, item_name=item_name, price=price)
