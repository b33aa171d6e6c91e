from src.playback.tier_policy import (
    ANIMATION_MAPPINGS,
    adaptive_animation_class,
    animation_class,
    animation_classes,
    animation_config,
    loading_indicator_class,
    should_disable_animations,
)


def test_low_tier_disables_animations():
    assert should_disable_animations("low") is True
    assert should_disable_animations("medium") is False
    assert should_disable_animations("high") is False


def test_force_disable_wins_over_tier():
    assert should_disable_animations("high", force_disable=True) is True
    assert animation_class("animate-spin", "high", force_disable=True) == ""


def test_animation_class_helpers():
    assert animation_class("animate-spin", "medium") == "animate-spin"
    assert animation_class("animate-spin", "low") == ""
    assert animation_classes(["animate-pulse", "animate-bounce"], "high") == "animate-pulse animate-bounce"
    assert animation_classes(["animate-pulse"], "low") == ""


def test_loading_indicator_uses_static_class_on_low_tier():
    assert loading_indicator_class("animate-spin", "opacity-75", tier="low") == "opacity-75"
    assert loading_indicator_class("animate-spin", "opacity-75", tier="high") == "animate-spin"


def test_adaptive_animation_class():
    assert adaptive_animation_class("pulse", "low") == "opacity-75"
    assert adaptive_animation_class("pulse", "medium") == "animate-pulse"
    assert adaptive_animation_class("wobble", "medium") == ""


def test_animation_config_covers_every_mapping():
    cfg = animation_config("low")
    assert cfg["disable_animations"] is True
    for name, mapping in ANIMATION_MAPPINGS.items():
        assert cfg[name] == mapping["static"]
    cfg = animation_config("high")
    assert cfg["disable_animations"] is False
    assert cfg["shimmer"] == ANIMATION_MAPPINGS["shimmer"]["animated"]
