from typing import Optional

from ..config import ARTICLE_SIZE_WORDS, DEFAULT_FORMALITY, DEFAULT_POINT_OF_VIEW, Settings
from ..models import ArticleSize, GenerationOptions


def merge_options(*layers: Optional[GenerationOptions]) -> GenerationOptions:
    """
    Layers option sets from lowest to highest precedence.

    A later layer wins field by field; ``None`` never overrides a value. A
    layer that picks a size preset without a word count drops any count
    inherited from lower layers.
    """
    merged: dict = {}
    for layer in layers:
        if layer is None:
            continue
        for field, value in layer.model_dump(exclude_none=True).items():
            if field == "article_size" and "article_size" in merged:
                lower = dict(merged["article_size"])
                # a named preset replaces an inherited explicit count
                if value.get("preset", "custom") != "custom" and "target_word_count" not in value:
                    lower.pop("target_word_count", None)
                value = {**lower, **value}
            merged[field] = value
    return GenerationOptions.model_validate(merged)


def with_defaults(options: Optional[GenerationOptions], settings: Settings) -> GenerationOptions:
    """Fills every unset voice and size field from the configured defaults."""
    defaults = GenerationOptions(
        language=settings.default_language,
        target_country=settings.default_geo,
        tone=settings.default_tone,
        point_of_view=DEFAULT_POINT_OF_VIEW,
        formality=DEFAULT_FORMALITY,
        article_size=ArticleSize(preset=settings.default_article_size),
    )
    return merge_options(defaults, options)


def target_word_count(options: GenerationOptions) -> int:
    size = options.article_size or ArticleSize()
    if size.target_word_count:
        return size.target_word_count
    return ARTICLE_SIZE_WORDS.get(size.preset or "medium", ARTICLE_SIZE_WORDS["medium"])
