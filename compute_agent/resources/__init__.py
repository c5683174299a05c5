"""资源管理模块，负责贡献会话、安全策略和贡献分数"""

from .models import ResourceLimits, ContributionSession
from .resource_manager import ResourceManager, calculate_contribution_score

__all__ = ["ResourceLimits", "ContributionSession", "ResourceManager", "calculate_contribution_score"]
