"""
Marketplace Service: エラー分類

呼び出し側に見せる結果は次の 4 種類に限定する。
FastAPI 層は status_code をそのまま HTTP ステータスとして返す。
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    """入力が不正（必須項目の欠落、数量 0 以下、在庫不足など）"""
    status_code = 400


class NotFoundError(MarketplaceError):
    """参照した商品が存在しない"""
    status_code = 404


class ConflictError(MarketplaceError):
    """
    楽観的ロックの競合、または結果が確定しないタイムアウト。

    ambiguous=True の場合はコミット済みの可能性がある。
    呼び出し側は再送する前に注文履歴を確認すること。
    """
    status_code = 409

    def __init__(self, message: str, ambiguous: bool = False) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous


class StoreUnavailableError(MarketplaceError):
    """ストアに到達できない、または想定外の障害"""
    status_code = 500


class ConfigurationError(Exception):
    """起動時の設定が不正"""
