"""
멤버십 동기화 설정
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

load_dotenv()


class SupabaseConfig(BaseSettings):
    """Supabase 설정"""

    supabase_url: str = Field(default="", description="Supabase Project URL")
    supabase_key: str = Field(default="", description="Supabase anon key")

    class Config:
        env_prefix = ""
        case_sensitive = False


class SyncConfig(BaseSettings):
    """캐시/원장 동기화 설정"""

    # 캐시
    cache_ttl_seconds: float = Field(default=300.0, description="캐시 TTL (초)")

    # 원장 쓰기
    max_concurrent_writes: int = Field(default=5, description="최대 동시 쓰기 수")
    write_timeout_seconds: float = Field(default=10.0, description="원장 쓰기 타임아웃 (초)")
    conflict_retry_delay: float = Field(default=0.5, description="충돌 재시도 대기 (초)")

    # 네트워크
    max_network_retries: int = Field(default=2, description="네트워크 오류 최대 재시도 횟수")
    network_retry_delay: float = Field(default=0.5, description="네트워크 재시도 기본 대기 (초)")

    class Config:
        env_prefix = "SYNC_"
        case_sensitive = False


class MaintenanceConfig(BaseSettings):
    """멤버십 유지보수 스케줄 설정"""

    maintenance_enabled: bool = Field(default=True, description="유지보수 작업 활성화")
    maintenance_hour: int = Field(default=3, description="매일 유지보수 실행 시간")

    class Config:
        env_prefix = ""
        case_sensitive = False


# 전역 설정 인스턴스
supabase_config = SupabaseConfig()
sync_config = SyncConfig()
maintenance_config = MaintenanceConfig()


class Tables:
    """원격 테이블/뷰 이름"""

    MEMBERSHIPS = "player_memberships"
    LEDGER = "membership_ledger"
    ATTENDANCE = "player_attendance"
    GRADES = "event_grades"
    MEMBERSHIP_USAGE = "vw_player_membership_usage_secure"
    ALERTS_SENT = "membership_alerts_sent"


class Procedures:
    """원격 RPC 이름"""

    SAVE_ATTENDANCE_BATCH = "save_attendance_batch"
    APPLY_MEMBERSHIP_DELTA = "apply_membership_delta"
    GET_MEMBERSHIP_SNAPSHOT = "get_membership_snapshot"
    AUTO_DEACTIVATE_PLAYERS = "fn_auto_deactivate_players"
