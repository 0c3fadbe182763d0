from lostfound.geo import (
    Candidate,
    Coordinate,
    InvalidCenterCoordinate,
    Page,
    ProximityResult,
    distance_km,
    exclude_self,
    find_within_radius,
    paginate,
    parse_coordinate,
)
from lostfound.fanout import (
    Author,
    DispatchReport,
    NewPost,
    NotificationJob,
    NotificationType,
    build_and_dispatch,
    build_jobs,
)
