from django import template

register = template.Library()


@register.filter
def get_item(mapping, key):
    """``{{ d|get_item:key }}`` for dict lookups with a variable key."""
    if not mapping:
        return None
    return mapping.get(key)


@register.filter
def rub(value):
    if value is None or value == "":
        return ""
    return f"{int(value):,}".replace(",", " ") + " ₽"
