"""Command-line interface for place_tracker.

Run:
    python -m place_tracker ingest --subject me --csv Path.csv
    python -m place_tracker process --subject me
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import UTC, datetime, timedelta

from place_tracker.engine import EngineParams, PlaceDetectionEngine
from place_tracker.errors import PlaceTrackerError
from place_tracker.ingest import ingest_batch, load_samples_csv
from place_tracker.models import DEFAULT_BATCH_LIMIT, DEFAULT_MAX_GAP_MINUTES, DEFAULT_MIN_STAY_MINUTES, DEFAULT_RADIUS_M
from place_tracker.places import frequent_places, label_place, resolve_place, unlabeled_frequent_places
from place_tracker.stats import travel_stats
from place_tracker.store import DEFAULT_DB_URL, TrackStore
from place_tracker.timeutils import format_local, parse_dt
from place_tracker.visits import sum_visits, time_at_place, write_visits_csv


def _range(args: argparse.Namespace) -> tuple[datetime, datetime]:
    end = parse_dt(args.end, args.tz) if args.end else datetime.now(UTC)
    start = parse_dt(args.start, args.tz) if args.start else end - timedelta(days=7)
    return start, end


def _engine(store: TrackStore, args: argparse.Namespace) -> PlaceDetectionEngine:
    params = EngineParams(
        min_stay_minutes=args.min_stay_minutes,
        cluster_radius_m=args.cluster_radius_m,
        max_gap_minutes=args.max_gap_minutes,
        match_radius_m=args.match_radius_m,
        batch_limit=args.batch_limit,
    )
    return PlaceDetectionEngine(store, params)


def _cmd_ingest(args: argparse.Namespace, store: TrackStore) -> int:
    samples = load_samples_csv(args.csv)
    device = {"model": args.device_model} if args.device_model else None
    engine = _engine(store, args) if args.process else None
    res = ingest_batch(store, args.subject, samples, device, engine=engine)
    print(f"收到={res.received}，新写入={res.inserted}，重复跳过={res.duplicates}")
    if res.processed is not None:
        p = res.processed
        print(f"处理：停留={p.clusters}，新 visit={p.visits_recorded}，新地点={p.places_created}")
    return 0


def _cmd_process(args: argparse.Namespace, store: TrackStore) -> int:
    engine = _engine(store, args)
    res = engine.process_all(args.subject) if args.all else engine.process_unprocessed(args.subject)
    print(
        f"点={res.points_seen}，停留={res.clusters}，新 visit={res.visits_recorded}，"
        f"更新 visit={res.visits_updated}，新地点={res.places_created}，"
        f"归入地点的点={res.points_assigned}，非地点的点={res.points_discarded}，"
        f"留待下一批={res.points_deferred}"
    )
    return 0


def _cmd_reprocess(args: argparse.Namespace, store: TrackStore) -> int:
    n = store.reset_processing(args.subject, drop_visits=not args.keep_visits)
    if args.keep_visits:
        print(f"已重置 {n} 个点（保留已有 visit），重新处理中……")
    else:
        print(f"已重置 {n} 个点并清空 visit，重新处理中……")
    return _cmd_process(args, store)


def _place_payload(p) -> dict[str, object]:
    return {
        "id": p.id,
        "name": p.display_name,
        "label": p.label,
        "category": p.category,
        "visit_count": p.visit_count,
        "latitude": round(p.latitude, 6),
        "longitude": round(p.longitude, 6),
        "address": p.address,
    }


def _cmd_places(args: argparse.Namespace, store: TrackStore) -> int:
    places = frequent_places(store, args.subject, args.limit)
    print(json.dumps([_place_payload(p) for p in places], ensure_ascii=False, indent=2))
    return 0


def _cmd_unlabeled(args: argparse.Namespace, store: TrackStore) -> int:
    places = unlabeled_frequent_places(store, args.subject, args.min_visits)
    print(f"找到 {len(places)} 个访问>={args.min_visits} 次且未命名的地点（用 label 命令命名）")
    print(json.dumps([_place_payload(p) for p in places], ensure_ascii=False, indent=2))
    return 0


def _cmd_label(args: argparse.Namespace, store: TrackStore) -> int:
    place = label_place(store, args.subject, args.place_id, args.name, args.category)
    print(json.dumps(_place_payload(place), ensure_ascii=False, indent=2))
    return 0


def _cmd_visits(args: argparse.Namespace, store: TrackStore) -> int:
    start, end = _range(args)
    place_id = None
    if args.place_id is not None or args.place_name:
        place_id = resolve_place(store, args.subject, place_id=args.place_id, label=args.place_name).id
    visits = store.visits(args.subject, start, end, place_id=place_id)
    places = {p.id: p for p in store.list_places(args.subject)}
    rows = [
        {
            "visit_id": v.id,
            "place_id": v.place_id,
            "place": places[v.place_id].display_name if v.place_id in places else None,
            "arrival": format_local(v.arrival, args.tz),
            "departure": format_local(v.departure, args.tz) if v.departure else None,
            "duration_minutes": v.duration_minutes,
        }
        for v in visits
    ]
    print(json.dumps(rows, ensure_ascii=False, indent=2))
    total = sum_visits(visits)
    print(f"visits={total.visits}, total={total.total_hhmmss}")
    return 0


def _cmd_export_visits(args: argparse.Namespace, store: TrackStore) -> int:
    start, end = _range(args)
    visits = store.visits(args.subject, start, end)
    places = {p.id: p for p in store.list_places(args.subject)}
    write_visits_csv(list(reversed(visits)), args.out, places, args.tz)
    print(f"已导出：{args.out}（{len(visits)} 条 visit）")
    return 0


def _cmd_time_at_place(args: argparse.Namespace, store: TrackStore) -> int:
    start, end = _range(args)
    res = time_at_place(store, args.subject, start, end, place_id=args.place_id, label=args.place_name)
    payload = {
        "place": res.place.display_name,
        "place_id": res.place.id,
        "total_visits": res.total_visits,
        "total_time_minutes": res.total_minutes,
        "total_time_hours": round(res.total_hours, 1),
        "average_visit_minutes": round(res.average_visit_minutes, 1),
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_stats(args: argparse.Namespace, store: TrackStore) -> int:
    start, end = _range(args)
    st = travel_stats(store, args.subject, start, end, max_gap_seconds=args.max_gap_seconds)
    payload = {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "points": st.point_count,
        "total_distance_meters": round(st.total_distance_m, 1),
        "total_distance_km": round(st.total_distance_m / 1000.0, 2),
        "average_speed_mps": round(st.average_moving_speed_mps, 2),
        "max_speed_mps": round(st.max_speed_mps, 2),
        "implied_speed_mps": round(st.implied_speed_mps, 2),
        "moving_time_minutes": round(st.moving_time_minutes, 1),
        "stationary_time_minutes": round(st.stationary_time_minutes, 1),
        "gaps_skipped": st.gaps_skipped,
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _point_payload(p, tz_name: str, distance: float | None = None) -> dict[str, object]:
    out: dict[str, object] = {
        "time": format_local(p.timestamp, tz_name),
        "latitude": p.latitude,
        "longitude": p.longitude,
        "accuracy_m": p.accuracy_m,
        "speed_mps": p.speed_mps,
        "place_id": p.place_id,
    }
    if distance is not None:
        out["distance_m"] = round(distance, 1)
    return out


def _cmd_history(args: argparse.Namespace, store: TrackStore) -> int:
    start, end = _range(args)
    points = store.points_in_window(args.subject, start, end, args.limit)
    print(json.dumps([_point_payload(p, args.tz) for p in points], ensure_ascii=False, indent=2))
    return 0


def _cmd_latest(args: argparse.Namespace, store: TrackStore) -> int:
    p = store.latest_point(args.subject)
    if p is None:
        print("没有位置数据")
        return 1
    print(json.dumps(_point_payload(p, args.tz), ensure_ascii=False, indent=2))
    return 0


def _cmd_at_time(args: argparse.Namespace, store: TrackStore) -> int:
    when = parse_dt(args.time, args.tz)
    p = store.point_at_time(args.subject, when, timedelta(minutes=args.tolerance_minutes))
    if p is None:
        print(f"{args.tolerance_minutes} 分钟内没有位置数据")
        return 1
    print(json.dumps(_point_payload(p, args.tz), ensure_ascii=False, indent=2))
    return 0


def _cmd_near(args: argparse.Namespace, store: TrackStore) -> int:
    start = parse_dt(args.start, args.tz) if args.start else None
    end = parse_dt(args.end, args.tz) if args.end else None
    hits = store.points_near(args.subject, args.lat, args.lon, args.radius_m, start, end, args.limit)
    print(json.dumps([_point_payload(p, args.tz, d) for p, d in hits], ensure_ascii=False, indent=2))
    return 0


def _cmd_enrich(args: argparse.Namespace, store: TrackStore) -> int:
    from place_tracker.geocode import JsonDiskCache, NominatimConfig, NominatimReverseGeocoder, enrich_place

    cfg = NominatimConfig(
        accept_language=args.geocode_lang,
        min_interval_seconds=args.geocode_min_interval,
        user_agent=args.geocode_user_agent,
    )
    geocoder = NominatimReverseGeocoder(cfg, cache=JsonDiskCache(args.geocode_cache))
    if args.place_id is not None:
        place_ids = [args.place_id]
    else:
        place_ids = [p.id for p in unlabeled_frequent_places(store, args.subject, args.min_visits)]

    ok = 0
    for pid in place_ids:
        place = enrich_place(store, args.subject, pid, geocoder)
        if place is not None:
            ok += 1
            print(json.dumps(_place_payload(place), ensure_ascii=False, indent=2))
    print(f"已补充 {ok}/{len(place_ids)} 个地点")
    return 0


def _add_engine_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--min-stay-minutes", type=float, default=DEFAULT_MIN_STAY_MINUTES, help="最短停留（分钟），短于此不算地点")
    p.add_argument("--cluster-radius-m", type=float, default=DEFAULT_RADIUS_M, help="相邻两点算同一停留的最大距离（米）")
    p.add_argument("--max-gap-minutes", type=float, default=DEFAULT_MAX_GAP_MINUTES, help="相邻两点算同一停留的最大间隔（分钟）")
    p.add_argument("--match-radius-m", type=float, default=DEFAULT_RADIUS_M, help="停留中心匹配已有地点的半径（米）")
    p.add_argument("--batch-limit", type=int, default=DEFAULT_BATCH_LIMIT, help="每批最多处理的点数")


def _add_range_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--start", type=str, default=None, help="开始时间（默认结束前7天），例如 2025-01-01 00:00:00")
    p.add_argument("--end", type=str, default=None, help="结束时间（默认现在）")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", type=str, default=DEFAULT_DB_URL, help="SQLAlchemy 数据库 URL")
    common.add_argument("--subject", type=str, required=True, help="被追踪对象ID")
    common.add_argument("--tz", type=str, default="UTC", help="显示/解析用时区（IANA）")

    p = argparse.ArgumentParser(prog="place_tracker")
    p.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_in = sub.add_parser("ingest", parents=[common], help="从CSV导入位置点（重复点自动跳过）")
    p_in.add_argument("--csv", type=str, default="Path.csv", help="输入CSV路径")
    p_in.add_argument("--device-model", type=str, default=None, help="设备型号")
    p_in.add_argument("--process", action="store_true", help="导入后立即处理")
    _add_engine_args(p_in)
    p_in.set_defaults(func=_cmd_ingest)

    p_pr = sub.add_parser("process", parents=[common], help="把未处理的点聚类成停留/地点/visit")
    p_pr.add_argument("--all", action="store_true", help="一直处理到没有未处理的点")
    _add_engine_args(p_pr)
    p_pr.set_defaults(func=_cmd_process)

    p_re = sub.add_parser("reprocess", parents=[common], help="重置所有点，清空 visit 后按当前参数重建（地点和名称保留）")
    p_re.add_argument("--all", action="store_true", default=True, help=argparse.SUPPRESS)
    p_re.add_argument(
        "--keep-visits",
        action="store_true",
        help="保留已有 visit，只更新同一到达时间的 visit（参数不变时使用）",
    )
    _add_engine_args(p_re)
    p_re.set_defaults(func=_cmd_reprocess)

    p_pl = sub.add_parser("places", parents=[common], help="按访问次数列出地点")
    p_pl.add_argument("--limit", type=int, default=20, help="最多列出多少个")
    p_pl.set_defaults(func=_cmd_places)

    p_un = sub.add_parser("unlabeled", parents=[common], help="列出常去但未命名的地点")
    p_un.add_argument("--min-visits", type=int, default=3, help="最少访问次数")
    p_un.set_defaults(func=_cmd_unlabeled)

    p_lb = sub.add_parser("label", parents=[common], help="给地点命名")
    p_lb.add_argument("--place-id", type=int, required=True, help="地点ID")
    p_lb.add_argument("--name", type=str, required=True, help="名称，例如 Home / Work")
    p_lb.add_argument("--category", type=str, default=None, help="类别，例如 home/work/restaurant")
    p_lb.set_defaults(func=_cmd_label)

    p_vi = sub.add_parser("visits", parents=[common], help="列出时间范围内的 visit")
    _add_range_args(p_vi)
    p_vi.add_argument("--place-id", type=int, default=None, help="只看某个地点")
    p_vi.add_argument("--place-name", type=str, default=None, help="按名称过滤地点")
    p_vi.set_defaults(func=_cmd_visits)

    p_ex = sub.add_parser("export-visits", parents=[common], help="导出 visits.csv")
    _add_range_args(p_ex)
    p_ex.add_argument("--out", type=str, default="visits.csv", help="输出 visits.csv 路径")
    p_ex.set_defaults(func=_cmd_export_visits)

    p_ta = sub.add_parser("time-at-place", parents=[common], help="统计在某地点的总时长")
    _add_range_args(p_ta)
    p_ta.add_argument("--place-id", type=int, default=None, help="地点ID")
    p_ta.add_argument("--place-name", type=str, default=None, help="地点名称（替代 place-id）")
    p_ta.set_defaults(func=_cmd_time_at_place)

    p_st = sub.add_parser("stats", parents=[common], help="出行统计：距离/速度")
    _add_range_args(p_st)
    p_st.add_argument(
        "--max-gap-seconds",
        type=float,
        default=None,
        help="相邻两点间隔超过该秒数时视为数据缺口，不计距离（默认不限制）",
    )
    p_st.set_defaults(func=_cmd_stats)

    p_hi = sub.add_parser("history", parents=[common], help="列出时间范围内的位置点")
    _add_range_args(p_hi)
    p_hi.add_argument("--limit", type=int, default=1000, help="最多返回多少个点")
    p_hi.set_defaults(func=_cmd_history)

    p_la = sub.add_parser("latest", parents=[common], help="最近一次位置")
    p_la.set_defaults(func=_cmd_latest)

    p_at = sub.add_parser("at-time", parents=[common], help="某一时刻的位置（最近的样本）")
    p_at.add_argument("--time", type=str, required=True, help="时间，例如 2025-01-15 14:30:00")
    p_at.add_argument("--tolerance-minutes", type=float, default=10.0, help="允许的时间偏差（分钟）")
    p_at.set_defaults(func=_cmd_at_time)

    p_ne = sub.add_parser("near", parents=[common], help="查找某坐标附近的位置点")
    p_ne.add_argument("--lat", type=float, required=True, help="纬度")
    p_ne.add_argument("--lon", type=float, required=True, help="经度")
    p_ne.add_argument("--radius-m", type=float, default=100.0, help="半径（米）")
    _add_range_args(p_ne)
    p_ne.add_argument("--limit", type=int, default=100, help="最多返回多少个点")
    p_ne.set_defaults(func=_cmd_near)

    p_en = sub.add_parser("enrich", parents=[common], help="用逆地理编码补充地点名称/地址/类别")
    p_en.add_argument("--place-id", type=int, default=None, help="只补充某个地点（默认：常去未命名地点）")
    p_en.add_argument("--min-visits", type=int, default=3, help="未指定地点时的最少访问次数")
    p_en.add_argument("--geocode-cache", type=str, default="geocode_cache.json", help="逆地理编码缓存文件")
    p_en.add_argument("--geocode-lang", type=str, default="en", help="逆地理编码语言（如 zh-CN/en）")
    p_en.add_argument("--geocode-min-interval", type=float, default=1.0, help="请求最小间隔（秒），公共服务建议>=1.0")
    p_en.add_argument(
        "--geocode-user-agent",
        type=str,
        default="place-tracker/0.1.0 (reverse-geocode; set your own UA)",
        help="HTTP User-Agent（建议填你自己的标识，避免被服务方屏蔽）",
    )
    p_en.set_defaults(func=_cmd_enrich)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = TrackStore(args.db)
    try:
        return int(args.func(args, store))
    except (PlaceTrackerError, ValueError, KeyError) as exc:
        print(f"错误：{exc}", file=sys.stderr)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
