"""
Silver Tracker - 白银行情采集与对账系统
主程序入口
"""
import sys
import json
import argparse
from datetime import datetime

from config import AppSettings
from core import execute_task, TaskResult, TASK_TYPES
from utils.logger import logger, set_console_level


__version__ = "0.1.0"


def parse_args(argv=None) -> argparse.Namespace:
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        prog="silver_tracker",
        description="白银行情采集与对账系统 - 采集交易所库存、汇率、现货价、基准价与零售价并计算每日对账指标",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  python main.py                           # 采集全部数据源并对账（默认）
  python main.py --task stock              # 仅采集交易所库存
  python main.py --task retail             # 仅采集零售报价
  python main.py --task runs --source fx_rate   # 查询汇率采集的运行记录
  python main.py --task stats              # PSI 趋势分析

  # 补录历史数据
  python main.py --task reconcile --date 2024-05-02
  python main.py --task backfill --days 30     # 补齐现货历史并逐日对账最近 30 天

  # 定时任务（cron）
  30 23 * * 1-5  python main.py --task reconcile --trigger scheduled --quiet
        """
    )

    parser.add_argument(
        "--task", "-t",
        choices=TASK_TYPES,
        default="reconcile",
        help="任务类型: reconcile=全部采集并对账, stock/fx/spot/benchmark/retail=单个数据源, "
             "backfill=历史补录, runs=运行记录, stats=压力分析 (默认: reconcile)"
    )

    parser.add_argument(
        "--date", "-d",
        help="指定日期 (格式: YYYY-MM-DD)，用于补录历史数据。默认使用参考时区今天。"
    )

    parser.add_argument(
        "--config", "-c",
        help="配置文件路径 (默认: config.yaml)"
    )

    parser.add_argument(
        "--days",
        type=int,
        help="backfill 任务逐日对账的天数 (1-365，默认使用配置 backfill.days)"
    )

    parser.add_argument(
        "--trigger",
        choices=["scheduled", "manual"],
        default="manual",
        help="触发来源，写入运行记录 (默认: manual)"
    )

    parser.add_argument(
        "--source", "-s",
        help="runs 任务的数据源过滤，如 exchange_stock、fx_rate、reconciliation"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="静默模式，减少输出"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser.parse_args(argv)


def print_banner() -> None:
    """打印启动横幅"""
    print()
    print("╔════════════════════════════════════════╗")
    print("║  Silver Tracker - 白银行情采集与对账   ║")
    print("╚════════════════════════════════════════╝")
    print()


def print_runs(runs: list) -> None:
    """打印运行记录列表"""
    print(f"  {'开始时间':<20} {'数据源':<18} {'状态':<8} {'新增':>4} {'更新':>4} {'失败':>4}")
    for run in runs:
        started = (run.get("started_at") or "")[:19]
        print(
            f"  {started:<20} {run['source']:<18} {run['status']:<8} "
            f"{run['inserted']:>4} {run['updated']:>4} {run['failed']:>4}"
        )
        if run.get("error_message"):
            print(f"      ↳ {run['error_message'][:120]}")


def print_result(result: TaskResult, quiet: bool = False) -> None:
    """打印任务执行结果"""
    if quiet:
        # 静默模式只输出关键信息
        status = "SUCCESS" if result.success else "FAILED"
        print(f"[{status}] {result.task_type}: {result.message}")
        return

    print()
    print("─" * 50)
    print("任务执行结果")
    print("─" * 50)
    print(f"  状态:   {'✅ 成功' if result.success else '❌ 失败'}")
    print(f"  类型:   {result.task_type}")
    print(f"  消息:   {result.message}")
    print(f"  开始:   {result.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  结束:   {result.finished_at.strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  耗时:   {(result.finished_at - result.started_at).total_seconds():.2f} 秒")

    if result.details:
        details = dict(result.details)
        runs = details.pop("runs", None)
        print(f"  详情:   {json.dumps(details, ensure_ascii=False, indent=2, default=str)}")
        if runs:
            print_runs(runs)
    print("─" * 50)


def main(argv=None) -> int:
    """
    主函数

    Returns:
        int: 退出码 (0=成功, 1=失败)
    """
    args = parse_args(argv)

    if args.quiet:
        set_console_level("WARNING")
    else:
        print_banner()
        print(f"⏰ 启动时间: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"📋 任务类型: {args.task}")
        if args.date:
            print(f"📅 目标日期: {args.date}")
        print()

    # 解析日期参数
    target_date = None
    if args.date:
        try:
            target_date = datetime.strptime(args.date, "%Y-%m-%d").date()
        except ValueError:
            print(f"❌ 日期格式错误: {args.date}，请使用 YYYY-MM-DD 格式")
            return 1

    if args.days is not None and not 1 <= args.days <= 365:
        print(f"❌ 补录天数无效: {args.days}，应为 1-365")
        return 1

    # 1. 加载配置
    try:
        settings = AppSettings.load(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ 配置加载失败: {e}")
        return 1

    # 2. 执行任务
    try:
        result = execute_task(args.task, target_date, settings, args.trigger, args.source, args.days)
    except Exception as e:
        logger.critical(f"任务执行异常: {e}", exc_info=True)
        print(f"❌ 任务执行异常: {e}")
        return 1

    # 3. 输出结果
    print_result(result, args.quiet)

    # 4. 返回退出码
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
