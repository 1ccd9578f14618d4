import io
import dataclasses

import streamlit as st
import pandas as pd

import trip_pipeline as trip


def read_waypoint_upload(uploaded_file) -> pd.DataFrame:
    """Read an uploaded .csv or .xlsx waypoint sheet into a DataFrame."""
    if uploaded_file.name.lower().endswith((".xlsx", ".xls")):
        return pd.read_excel(uploaded_file)
    return pd.read_csv(uploaded_file)


def run_pipeline(waypoint_df: pd.DataFrame, settings: trip.TripSettings) -> trip.TripResult:
    # Phase 1: waypoints from the uploaded sheet
    waypoints = trip.waypoints_from_frame(waypoint_df)

    # Phase 4 prerequisites
    regions = trip.load_region_catalog(trip.ensure_region_catalog(settings), crs=settings.coverage_crs)

    # Phases 2-4
    provider = trip.build_provider(settings)
    return trip.run_trip(waypoints, regions, provider, settings)


st.set_page_config(page_title="Trip Route & Coverage", layout="wide")
st.title("Trip Route & Coverage")

st.markdown(
    "Upload a waypoint file (`.csv` or `.xlsx`) with `location name`, `longitude` and `latitude` columns, "
    "one row per stop in visit order.\n"
    "The app routes each leg, labels distances and durations, and lists the states the trip passes through."
)

base_settings = trip.load_settings()

with st.sidebar:
    provider_name = st.selectbox("Routing provider", ["here", "osrm"],
                                 index=0 if base_settings.provider == "here" else 1)
    api_key_input = st.text_input("HERE API Key", type="password", help="Required for HERE routing (v8)")
    osrm_url = st.text_input("OSRM URL", value=base_settings.osrm_url)
    max_concurrent = st.number_input("Max concurrent requests", min_value=1, max_value=30,
                                     value=base_settings.max_concurrent, step=1)
    run_button = st.button("Route Trip", type="primary")

uploaded_file = st.file_uploader("Waypoint file", type=["csv", "xlsx"])

if run_button:
    if not uploaded_file:
        st.error("Please upload a waypoint file.")
        st.stop()

    api_key = api_key_input.strip() or base_settings.here_api_key
    if provider_name == "here" and not api_key:
        st.error("HERE API key is required (enter in sidebar or configure `secrets.toml`).")
        st.stop()

    settings = dataclasses.replace(
        base_settings,
        provider=provider_name,
        here_api_key=api_key,
        osrm_url=osrm_url.strip().rstrip("/"),
        max_concurrent=int(max_concurrent),
    )

    try:
        waypoint_df = read_waypoint_upload(uploaded_file)
        st.success(f"Loaded {len(waypoint_df)} waypoints from `{uploaded_file.name}`.")

        with st.spinner("Routing legs and resolving regions..."):
            result = run_pipeline(waypoint_df, settings)

    except trip.InputError as e:
        st.error(f"Invalid waypoint data: {e}")
        st.stop()
    except Exception as e:
        st.exception(e)
        st.stop()

    col1, col2, col3 = st.columns(3)
    col1.metric("Legs routed", f"{len(result.routes)}/{len(result.segments)}")
    col2.metric("Total distance", result.totals["distance"])
    col3.metric("Total driving time", result.totals["duration"])

    st.subheader("Stops")
    stops = pd.DataFrame([{"name": w.name, "lat": w.lat, "lon": w.lon} for w in result.waypoints])
    st.map(stops, latitude="lat", longitude="lon")

    st.subheader("Legs")
    st.dataframe(result.legs, use_container_width=True)

    regions = trip.region_table(result)
    visited = regions[regions["visited"]]
    st.subheader(f"Regions visited ({len(visited)})")
    st.dataframe(visited, use_container_width=True)

    failures = trip.failure_table(result)
    if len(failures) > 0:
        st.subheader("Failures")
        st.warning(f"{len(failures)} legs/regions could not be processed.")
        st.dataframe(failures, use_container_width=True)

    with st.expander("Route/region intersections"):
        st.dataframe(result.coverage.hits, use_container_width=True)

    # Provide downloads
    st.download_button(
        label="Download legs CSV",
        data=result.legs.to_csv(index=False).encode("utf-8"),
        file_name="trip_legs.csv",
        mime="text/csv",
    )

    excel_buf = io.BytesIO()
    with pd.ExcelWriter(excel_buf, engine="openpyxl") as writer:
        result.legs.to_excel(writer, index=False, sheet_name="Legs")
        regions.to_excel(writer, index=False, sheet_name="Regions")
        failures.to_excel(writer, index=False, sheet_name="Failures")
    st.download_button(
        label="Download Excel",
        data=excel_buf.getvalue(),
        file_name="trip_summary.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )

    st.success("Done.")
