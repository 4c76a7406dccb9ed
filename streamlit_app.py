from __future__ import annotations

from datetime import date, datetime, time, timedelta

import streamlit as st

from place_tracker.engine import EngineParams, PlaceDetectionEngine
from place_tracker.models import DEFAULT_MAX_GAP_MINUTES, DEFAULT_MIN_STAY_MINUTES, DEFAULT_RADIUS_M
from place_tracker.places import label_place
from place_tracker.stats import travel_stats
from place_tracker.store import DEFAULT_DB_URL, TrackStore
from place_tracker.timeutils import format_local, tzinfo_from_name
from place_tracker.visits import sum_visits


def _hhmmss(seconds: float) -> str:
    s = int(round(max(0.0, seconds)))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"


def _range_bounds(start_d: date, end_d: date, tz_name: str) -> tuple[datetime, datetime]:
    """Convert a date range to instants [start 00:00, end+1 00:00) in tz."""

    tz = tzinfo_from_name(tz_name)
    start_dt = datetime.combine(start_d, time.min).replace(tzinfo=tz)
    end_dt = datetime.combine(end_d + timedelta(days=1), time.min).replace(tzinfo=tz)
    return start_dt, end_dt


@st.cache_resource(show_spinner=False)
def _open_store(db_url: str) -> TrackStore:
    return TrackStore(db_url)


def main() -> None:
    st.set_page_config(page_title="地点与停留", layout="wide")
    st.title("地点与停留：按时间范围统计")

    with st.sidebar:
        st.subheader("数据与时区")
        db_url = st.text_input("数据库 URL", value=DEFAULT_DB_URL)
        subject = st.text_input("被追踪对象ID", value="me")
        tz_name = st.text_input("时区（IANA）", value="UTC")

        with st.expander("聚类参数（通常不用改）", expanded=False):
            min_stay = st.number_input("min_stay_minutes", value=DEFAULT_MIN_STAY_MINUTES, step=1.0)
            cluster_radius = st.number_input("cluster_radius_m", value=DEFAULT_RADIUS_M, step=5.0)
            max_gap = st.number_input("max_gap_minutes", value=DEFAULT_MAX_GAP_MINUTES, step=5.0)
            match_radius = st.number_input("match_radius_m", value=DEFAULT_RADIUS_M, step=5.0)
            cap_gaps = st.checkbox("出行统计忽略长时间缺口", value=False)
            gap_seconds = st.number_input("缺口阈值（秒）", value=1800.0, step=60.0, disabled=not cap_gaps)

        store = _open_store(db_url)
        if st.button("处理未处理的点", type="primary", use_container_width=True):
            params = EngineParams(
                min_stay_minutes=float(min_stay),
                cluster_radius_m=float(cluster_radius),
                max_gap_minutes=float(max_gap),
                match_radius_m=float(match_radius),
            )
            with st.spinner("正在聚类 ..."):
                res = PlaceDetectionEngine(store, params).process_all(subject)
            st.success(f"点={res.points_seen}，新 visit={res.visits_recorded}，新地点={res.places_created}")

        st.subheader("时间范围")
        today = datetime.now(tzinfo_from_name(tz_name)).date()
        start_d = st.date_input("开始日期", value=today.replace(day=1))
        end_d = st.date_input("结束日期", value=today)

    if start_d > end_d:
        st.error("开始日期不能晚于结束日期。")
        return

    start, end = _range_bounds(start_d, end_d, tz_name)
    places = {p.id: p for p in store.list_places(subject)}
    visits = store.visits(subject, start, end)
    stats = travel_stats(store, subject, start, end, max_gap_seconds=float(gap_seconds) if cap_gaps else None)

    st.subheader("汇总")
    total = sum_visits(visits)
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("停留总时长", total.total_hhmmss)
    c2.metric("visit 数", str(total.visits))
    c3.metric("出行距离", f"{stats.total_distance_m / 1000.0:.2f} km")
    c4.metric("最高速度", f"{stats.max_speed_mps:.1f} m/s")

    st.subheader("按地点")
    per_place: dict[int, float] = {}
    for v in visits:
        per_place[v.place_id] = per_place.get(v.place_id, 0.0) + v.duration_seconds
    place_rows = [
        {
            "place_id": pid,
            "name": places[pid].display_name if pid in places else "",
            "category": places[pid].category if pid in places else "",
            "hhmmss": _hhmmss(sec),
            "visits_total": places[pid].visit_count if pid in places else 0,
        }
        for pid, sec in sorted(per_place.items(), key=lambda kv: kv[1], reverse=True)
    ]
    st.dataframe(place_rows, use_container_width=True, height=320)

    with st.expander("给地点命名", expanded=False):
        if places:
            pid = st.selectbox("地点", options=list(places), format_func=lambda i: f"#{i} {places[i].display_name}")
            name = st.text_input("名称")
            category = st.text_input("类别（可选）")
            if st.button("保存名称") and name.strip():
                label_place(store, subject, int(pid), name, category or None)
                st.success("已保存")

    st.subheader("visit 明细")
    rows = [
        {
            "visit_id": v.id,
            "place": places[v.place_id].display_name if v.place_id in places else "",
            "arrival": format_local(v.arrival, tz_name),
            "departure": format_local(v.departure, tz_name) if v.departure else "",
            "minutes": v.duration_minutes,
        }
        for v in visits
    ]
    st.dataframe(rows, use_container_width=True, height=520)

    st.caption(
        "说明：日期范围按本地时区计算，区间为 [开始日 00:00, 结束日+1 00:00)；visit 按到达时间落在范围内筛选。"
    )


if __name__ == "__main__":
    main()
