from garson.models.conversation import Conversation
from garson.models.processed_message import ProcessedMessage
from garson.models.order import Order
from garson.models.order_item import OrderItem
from garson.models.menu_item import MenuItem
from garson.models.menu_category import MenuCategory
from garson.models.menu_synonym import MenuSynonym
from garson.models.modifier_group import ModifierGroup
from garson.models.modifier import Modifier
from garson.models.menu_item_modifier_group import MenuItemModifierGroup
from garson.models.order_intent import OrderIntent
from garson.models.cross_sell_rule import CrossSellRule
from garson.models.upsell_event import UpsellEvent
from garson.models.store import Store
from garson.models.ai_config import AIConfig
from garson.models.whatsapp_message_log import WhatsAppMessageLog
