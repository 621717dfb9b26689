import asyncio

from mentor_sync import build_orchestrator, load_config


async def main():
    # 加载配置
    config = load_config("sync.yaml")

    # 创建协调器并执行一个同步周期
    orchestrator = build_orchestrator(config)
    async with orchestrator:
        run = await orchestrator.run_sync_cycle()

    print(f"结果: {run.outcome.value}")
    for name, summary in run.sources.items():
        print(f"  {name}: {summary.status.value} 同步 {summary.records_synced} 条, "
              f"水位线 {summary.new_watermark.isoformat()}")


if __name__ == "__main__":
    asyncio.run(main())
