"""例外定義"""

from typing import List, Optional


class CalendarHubError(Exception):
    """基底例外"""


class AdapterError(CalendarHubError):
    """ソースアダプターのエラー（「データなし」とは区別される）"""

    def __init__(self, source: str, message: str):
        super().__init__(f"[{source}] {message}")
        self.source = source


class SourceUnavailableError(AdapterError):
    """ネットワーク障害・サーバーエラー"""


class SourceAuthenticationError(AdapterError):
    """認証エラー"""


class SourceRateLimitError(AdapterError):
    """レート制限"""

    def __init__(self, source: str, message: str, retry_after: Optional[float] = None):
        super().__init__(source, message)
        self.retry_after = retry_after


class SourceTimeoutError(AdapterError):
    """タイムアウト"""


class MalformedRecordError(CalendarHubError):
    """必須項目の欠落・不正な時刻範囲"""

    def __init__(self, source: str, message: str):
        super().__init__(f"Malformed {source} record: {message}")
        self.source = source


class InvalidProviderConfigError(CalendarHubError):
    """接続設定の検証エラー"""

    def __init__(self, provider: str, errors: List[str]):
        super().__init__(f"Invalid {provider} configuration: {'; '.join(errors)}")
        self.provider = provider
        self.errors = errors


class ConnectionNotFoundError(CalendarHubError):
    """接続設定が存在しない"""


class ConflictNotFoundError(CalendarHubError):
    """競合IDが存在しない"""

    def __init__(self, conflict_id: str):
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class AlreadyResolvedError(CalendarHubError):
    """別の戦略で解決済みの競合"""

    def __init__(self, conflict_id: str, existing: str, requested: str):
        super().__init__(
            f"Conflict {conflict_id} already resolved with {existing}, cannot resolve with {requested}"
        )
        self.conflict_id = conflict_id
        self.existing = existing
        self.requested = requested


class StorageError(CalendarHubError):
    """永続化エラー"""


class CredentialDecryptionError(CalendarHubError):
    """保存済み接続設定を復号できない（暗号化キー不一致など）"""

    def __init__(self, user_id: str, source: str):
        super().__init__(f"Cannot decrypt {source} connection for user {user_id}")
        self.user_id = user_id
        self.source = source
