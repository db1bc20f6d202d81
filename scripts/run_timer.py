import asyncio, argparse
from shot_timer_bridge.bridge import run
from shot_timer_bridge.shots import format_ms


def main():
    ap = argparse.ArgumentParser(description="Run one drill on a BLE shot timer and print the shots")
    ap.add_argument("--config", required=True)
    ap.add_argument("--mode", choices=["fixed", "random"], help="start delay mode (default: from config)")
    ap.add_argument("--duration", type=float, default=60.0, help="seconds to collect shots")
    ap.add_argument("--reset", action="store_true", help="zero the timer's shot counter first")
    args = ap.parse_args()
    snap = asyncio.run(run(args.config, args.mode, args.duration, args.reset))
    print(f"{'#':>3}  {'t from beep':>11}  {'split':>8}")
    for seq, t, split in snap.table():
        print(f"{seq:>3}  {t:>11}  {split:>8}")
    print(f"first shot {format_ms(snap.first_shot_ms)}  shots {snap.shot_count}  total {format_ms(snap.total_time_ms)}")


if __name__ == "__main__":
    main()
