"""
設定管理 - 階層化YAML設定・環境変数オーバーライド・認証情報暗号化
"""

from .enhanced_config import ConfigManager, EnhancedConfig, SecurityManager

__all__ = ['ConfigManager', 'EnhancedConfig', 'SecurityManager']
