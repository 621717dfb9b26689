from datetime import datetime, timezone

from mentor_sync.sources.sqlite_source import SQLiteRecordSource

if __name__ == '__main__':
    # 看板数据的本地镜像
    source = SQLiteRecordSource("dashboard.db")
    source.ensure_collection("goals")

    # 写入一条新目标
    source.upsert_record(
        "goals",
        "g-101",
        datetime.now(timezone.utc),
        {
            "student_id": "s-7",
            "student_name": "林同学",
            "title": "完成第一个开源贡献",
            "category": "engineering",
            "status": "pending",
        },
    )

    print("✓ 新目标已写入，下一次 mentor-sync sync 将同步到 Sheets 和 Discord")
