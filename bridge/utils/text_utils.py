from typing import Optional
import re

def truncate_text(text: str, max_length: int = 100) -> str:
    """
    Обрезает текст до указанной длины, добавляя многоточие

    Args:
        text: Исходный текст
        max_length: Максимальная длина результата

    Returns:
        str: Обрезанный текст
    """
    if len(text) <= max_length:
        return text

    return text[:max_length-3] + "..."

def slugify(text: str, max_length: Optional[int] = None) -> str:
    """
    Приводит текст к виду, допустимому в имени канала Discord

    Args:
        text: Исходный текст
        max_length: Максимальная длина результата

    Returns:
        str: Строка из латиницы в нижнем регистре, цифр и дефисов
    """
    slug = re.sub(r'[^a-z0-9-]', '-', text.lower())
    slug = re.sub(r'-+', '-', slug)
    if max_length is not None:
        slug = slug[:max_length]
    return slug

def parse_custom_id(custom_id: str) -> Optional[tuple]:
    """
    Разбирает custom_id кнопки вида close_<tid>

    Args:
        custom_id: Значение custom_id из события кнопки

    Returns:
        Optional[tuple]: (действие, номер тикета) или None
    """
    match = re.match(r'^([a-z]+)_(.+)$', custom_id or '')
    if not match:
        return None
    return match.group(1), match.group(2)
