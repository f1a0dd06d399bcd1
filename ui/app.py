import os
import requests
import pandas as pd
import streamlit as st
import altair as alt

API_URL = os.environ.get("API_URL", "http://localhost:8000").rstrip("/")
st.set_page_config(page_title="Wholesale Insights", layout="wide")

# Altair safety (large datasets)
alt.data_transformers.disable_max_rows()

st.sidebar.title("Wholesale Insights")
st.sidebar.caption("Retailer analytics for the wholesale portal")

def api_get(path, **params):
    r = requests.get(f"{API_URL}{path}", params=params or None, timeout=20)
    r.raise_for_status()
    return r.json()

def money(v):
    return f"${(v or 0):,.2f}"

tabs = st.tabs(["Insights", "Dashboard", "Retailer", "Orders", "System"])

# -------------------- Insights --------------------
with tabs[0]:
    st.header("Insights")
    try:
        ins = api_get("/admin/insights")
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Total Revenue", money(ins.get("total_revenue")))
        c2.metric("Orders", f"{ins.get('total_orders', 0):,}")
        c3.metric("Units Sold", f"{ins.get('units_sold', 0):,}")
        c4.metric("Avg Order", money(ins.get("avg_order_value")))

        c5, c6, c7, c8 = st.columns(4)
        c5.metric("Active Retailers", ins.get("active_retailers", 0))
        c6.metric("New This Month", ins.get("new_retailers_this_month", 0))
        c7.metric("Reorder Rate", f"{ins.get('reorder_rate', 0):.1f}%")
        c8.metric("Active States", ins.get("active_states", 0))

        st.subheader("Monthly Revenue (trailing 12 months)")
        st.caption(f"Month-over-month growth: {ins.get('growth_rate', 0):+.1f}%")
        df_month = pd.DataFrame(ins.get("monthly_revenue", []))
        if not df_month.empty:
            chart = alt.Chart(df_month).mark_bar().encode(
                x=alt.X("month:N", sort=list(df_month["month"]), title="Month"),
                y=alt.Y("revenue:Q", title="Revenue ($)"),
                tooltip=["month", alt.Tooltip("revenue:Q", format=",.2f")],
            ).properties(height=280)
            st.altair_chart(chart, use_container_width=True)

        col1, col2 = st.columns(2)
        with col1:
            st.subheader("Revenue by State")
            df_state = pd.DataFrame(ins.get("revenue_by_state", []))
            if df_state.empty:
                st.info("No state could be read from retailer addresses.")
            else:
                chart = alt.Chart(df_state).mark_bar().encode(
                    x=alt.X("revenue:Q", title="Revenue ($)"),
                    y=alt.Y("state:N", sort="-x", title=None),
                    tooltip=["state", alt.Tooltip("revenue:Q", format=",.2f")],
                ).properties(height=280)
                st.altair_chart(chart, use_container_width=True)
        with col2:
            st.subheader("At-Risk Retailers")
            df_risk = pd.DataFrame(ins.get("at_risk_retailers", []))
            if df_risk.empty:
                st.success("No retailers past the at-risk window.")
            else:
                st.dataframe(df_risk[["company_name", "last_order_date", "days_since"]], use_container_width=True)

        col3, col4 = st.columns(2)
        with col3:
            st.subheader("Top Retailers by Revenue")
            st.dataframe(pd.DataFrame(ins.get("top_retailers_by_revenue", [])), use_container_width=True)
        with col4:
            st.subheader("Top Retailers by Orders")
            st.dataframe(pd.DataFrame(ins.get("top_retailers_by_orders", [])), use_container_width=True)
    except requests.RequestException as e:
        st.error(f"Failed to load insights: {e}")

# -------------------- Dashboard --------------------
with tabs[1]:
    st.header("Dashboard")
    try:
        dash = api_get("/admin/dashboard")
        s = dash.get("stats", {})
        c1, c2, c3 = st.columns(3)
        c1.metric("Today", money(s.get("today_revenue")))
        c2.metric("Last 7 days", money(s.get("week_revenue")))
        c3.metric("Last 30 days", money(s.get("month_revenue")))
        c4, c5, c6 = st.columns(3)
        c4.metric("Orders", s.get("total_orders", 0))
        c5.metric("Pending", s.get("pending_orders", 0))
        c6.metric("Shipped", s.get("shipped_orders", 0))

        col1, col2 = st.columns(2)
        with col1:
            st.subheader("Top Products")
            st.dataframe(pd.DataFrame(dash.get("top_products", [])), use_container_width=True)
        with col2:
            st.subheader("Top Retailers")
            st.dataframe(pd.DataFrame(dash.get("top_retailers", [])), use_container_width=True)
        st.subheader("Recent Orders")
        st.dataframe(pd.DataFrame(dash.get("recent_orders", [])), use_container_width=True)
    except requests.RequestException as e:
        st.error(f"Failed to load dashboard: {e}")

# -------------------- Retailer drill-down --------------------
with tabs[2]:
    st.header("Retailer Drill-down")
    retailer_id = st.text_input("Retailer ID")
    if retailer_id:
        try:
            det = api_get(f"/admin/retailers/{retailer_id}")
            retailer = det.get("retailer", {})
            st.subheader(retailer.get("company_name") or retailer_id)
            st.caption(retailer.get("business_address") or "")

            s = det.get("stats", {})
            c1, c2, c3, c4 = st.columns(4)
            c1.metric("Orders", s.get("total_orders", 0))
            c2.metric("Total Spent", money(s.get("total_spent")))
            c3.metric("Avg Order", money(s.get("avg_order")))
            gap = s.get("avg_days_between")
            c4.metric("Avg Days Between", f"{gap:.0f}" if gap is not None else "—")

            trend = det.get("trend")
            st.subheader("Average Order by Quarter")
            if trend:
                st.caption(f"{trend['direction']} {trend['change']:+.1f}% vs previous quarter")
            df_q = pd.DataFrame(det.get("quarters", []))
            if not df_q.empty:
                chart = alt.Chart(df_q).mark_line(point=True).encode(
                    x=alt.X("label:N", sort=list(df_q["label"]), title="Quarter"),
                    y=alt.Y("average:Q", title="Avg order ($)"),
                    tooltip=["label", alt.Tooltip("average:Q", format=",.2f"), "count"],
                ).properties(height=260)
                st.altair_chart(chart, use_container_width=True)

            st.subheader("Top SKUs")
            st.dataframe(pd.DataFrame(det.get("top_skus", [])), use_container_width=True)
            st.subheader("Locations")
            st.dataframe(pd.DataFrame(det.get("locations", [])), use_container_width=True)
            st.subheader("Orders")
            st.dataframe(pd.DataFrame(det.get("orders", [])), use_container_width=True)

            range_key = st.selectbox("Margin window", ["all", "last30", "last90", "ytd", "lastYear"])
            ra = api_get(f"/retailers/{retailer_id}/analytics", range=range_key)
            m1, m2, m3, m4 = st.columns(4)
            m1.metric("Wholesale", money(ra.get("total_wholesale")))
            m2.metric("MSRP Value", money(ra.get("total_msrp")))
            m3.metric("Potential Profit", money(ra.get("potential_profit")))
            m4.metric("Margin", f"{ra.get('profit_margin', 0):.1f}%")
        except requests.RequestException as e:
            st.error(f"Failed to load retailer: {e}")

# -------------------- Orders / export --------------------
with tabs[3]:
    st.header("Orders Export")
    status = st.selectbox("Status", ["all", "pending", "processing", "shipped", "delivered", "canceled"])
    c1, c2 = st.columns(2)
    start = c1.date_input("From", value=None)
    end = c2.date_input("To", value=None)
    if st.button("Build CSV"):
        params = {"status": status}
        if start:
            params["start_date"] = start.isoformat()
        if end:
            params["end_date"] = end.isoformat()
        try:
            r = requests.get(f"{API_URL}/admin/orders/export", params=params, timeout=30)
            r.raise_for_status()
            fname = r.headers.get("Content-Disposition", "").split("filename=")[-1].strip('"') or "orders.csv"
            st.download_button("Download CSV", data=r.content, file_name=fname, mime="text/csv")
        except requests.RequestException as e:
            st.error(f"Export failed: {e}")

# -------------------- System --------------------
with tabs[4]:
    st.header("System")
    try:
        st.json(api_get("/health"))
    except requests.RequestException as e:
        st.error(f"API not reachable: {e}")
