"""
配置管理模块

使用 Pydantic Settings 从 .env 文件读取配置，支持任意 OpenAI 兼容的文本生成端点。
"""

from pathlib import Path
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_DIR = PACKAGE_DIR.parent


class Settings(BaseSettings):
    """应用配置类"""

    # 文本生成端点（DeepSeek / Groq / Together / OpenAI 均兼容 OpenAI 格式）
    text_provider_name: str = "deepseek"
    text_api_key: str = ""
    text_base_url: str = "https://api.deepseek.com/v1"
    text_model: str = "deepseek-chat"

    # 图片生成端点（Replicate HTTP API）
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_image_model: str = "ideogram-ai/ideogram-v2-turbo"
    # 请求中 image_model 的可选值 -> Replicate 模型
    replicate_image_models: dict[str, str] = Field(
        default_factory=lambda: {
            "flux": "black-forest-labs/flux-1.1-pro",
            "ideogram": "ideogram-ai/ideogram-v2-turbo",
        }
    )
    default_aspect_ratio: str = "3:2"

    # 语料库
    corpus_path: str = str(PACKAGE_DIR / "data" / "corpus.json")
    retrieval_min_similarity: float = 0.0

    # 超时与重试
    stage_timeout_seconds: float = 60.0
    pipeline_timeout_seconds: float = 240.0
    retry_backoff_seconds: float = 1.0
    stream_channel_size: int = 64
    max_image_count: int = 4
    default_image_count: int = 3

    # 积分
    credit_costs: dict[str, int] = Field(
        default_factory=lambda: {
            "short_form": 2,
            "long_form": 2,
            "curated_notes": 3,
            "outline": 2,
            "titles": 1,
            "images": 3,
        }
    )
    ledger_backend: str = "sqlite"  # "sqlite" | "supabase"
    credit_db_path: str = str(PROJECT_DIR / "output" / "credits.db")

    # Supabase（账户 / 身份）
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    supabase_timeout_seconds: float = 10.0

    # 认证（token -> user_id；为空且未配置 Supabase 时跳过认证，方便开发）
    auth_tokens: dict[str, str] = Field(default_factory=dict)

    # 服务器配置
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # 前端配置
    frontend_url: str = "http://localhost:3000"

    # 速率限制（slowapi 格式）
    rate_limit_generate: str = "10/minute"
    rate_limit_query: str = "60/minute"

    # 日志
    log_level: str = "INFO"
    log_format: str = "auto"  # "auto" | "json" | "console"

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    def validate_startup(self) -> list[str]:
        """启动时校验关键配置，返回警告列表。"""
        warnings: list[str] = []
        if not self.text_api_key:
            warnings.append("TEXT_API_KEY 未设置，文本生成将不可用")
        if not self.replicate_api_token:
            warnings.append("REPLICATE_API_TOKEN 未设置，图片生成将不可用")
        if not self.corpus_file.exists():
            warnings.append(f"CORPUS_PATH 不存在: {self.corpus_file}")
        if self.ledger_backend == "supabase" and not (
            self.supabase_url and self.supabase_service_role_key
        ):
            warnings.append("LEDGER_BACKEND=supabase 但 SUPABASE_URL / SERVICE_ROLE_KEY 未设置")
        for mode, cost in self.credit_costs.items():
            if cost <= 0:
                warnings.append(f"CREDIT_COSTS[{mode}] 必须为正整数: {cost}")
        return warnings

    def credit_cost_for(self, mode: str) -> int:
        """获取某个生成模式的积分价格。"""
        return int(self.credit_costs.get(mode, 0))

    @property
    def corpus_file(self) -> Path:
        """获取语料库文件的绝对路径"""
        return Path(self.corpus_path).resolve()

    @property
    def credit_db_file(self) -> Path:
        """获取积分数据库的绝对路径"""
        return Path(self.credit_db_path).resolve()


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例（带缓存）"""
    return Settings()


# 导出全局配置实例
settings = get_settings()
