from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class AIFeature(StrEnum):
    SCRIPT_ANALYSIS = "script_analysis"
    CHARACTER_GENERATION = "character_generation"
    SCENE_GENERATION = "scene_generation"
    VIDEO_GENERATION = "video_generation"
    IMAGE_UNDERSTANDING = "image_understanding"
    CHAT = "chat"
    FREEDOM_IMAGE = "freedom_image"
    FREEDOM_VIDEO = "freedom_video"


@dataclass(frozen=True)
class FeatureInfo:
    name: str
    description: str


FEATURE_INFO: dict[AIFeature, FeatureInfo] = {
    AIFeature.SCRIPT_ANALYSIS: FeatureInfo("剧本分析", "将故事文本分解为结构化剧本"),
    AIFeature.CHARACTER_GENERATION: FeatureInfo("角色生成", "生成角色参考图和变体服装"),
    AIFeature.SCENE_GENERATION: FeatureInfo("场景生成", "生成场景环境参考图"),
    AIFeature.VIDEO_GENERATION: FeatureInfo("视频生成", "将图片转换为视频"),
    AIFeature.IMAGE_UNDERSTANDING: FeatureInfo("图片理解", "分析图片内容"),
    AIFeature.CHAT: FeatureInfo("通用对话", "AI 对话和文本生成"),
    AIFeature.FREEDOM_IMAGE: FeatureInfo("自由板块-图片", "自由板块独立的图片生成配置"),
    AIFeature.FREEDOM_VIDEO: FeatureInfo("自由板块-视频", "自由板块独立的视频生成配置"),
}

# Fallback platform when a feature has no explicit binding.
FEATURE_PLATFORM_MAP: dict[AIFeature, str] = {
    AIFeature.SCRIPT_ANALYSIS: "memefast",
    AIFeature.CHARACTER_GENERATION: "memefast",
    AIFeature.VIDEO_GENERATION: "memefast",
    AIFeature.IMAGE_UNDERSTANDING: "memefast",
    AIFeature.CHAT: "memefast",
    AIFeature.FREEDOM_IMAGE: "memefast",
    AIFeature.FREEDOM_VIDEO: "memefast",
}


def get_feature_name(feature: AIFeature) -> str:
    info = FEATURE_INFO.get(feature)
    return info.name if info else str(feature)
