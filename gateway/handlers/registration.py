"""
Device identity resolution and auto-registration
"""
from pydantic import ValidationError

from log import setup_logger
from type import BoardRecord, IdentityClaim, RegistrationAck
from gateway.errors import ProtocolError, RegistrationError, TransportError
from gateway.store import BOARDS, USERS, Store
from gateway.utils.helpers import decode_payload, device_id_from_topic, now_iso, to_int

logger = setup_logger(__name__)


def parse_registration(data) -> IdentityClaim:
    """
    Validate a message from the `register` topic

    Raises:
        ProtocolError: deviceId or shortId missing, or fields of the wrong type
    """
    if not data.get("deviceId") or not data.get("shortId"):
        raise ProtocolError("Registration missing deviceId or shortId")
    try:
        return IdentityClaim.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid registration payload: {e}") from e


class RegistrationHandler:
    def __init__(self, mqtt_client, store: Store, response_handler=None):
        """
        Args:
            mqtt_client (MQTTClient): Publishes acks and owns the subscriptions
            store (Store): Users and boards
            response_handler (ResponseHandler): Handles a board's custom
                response topic when no existing subscription covers it
        """
        self.mqtt_client = mqtt_client
        self.store = store
        self.response_handler = response_handler

    def resolve_owner(self, claim: IdentityClaim):
        """
        Find the owning account: short id, then email, then numeric id

        Returns:
            The user id, or None if nothing matches
        """
        if claim.short_id:
            users = self.store.find(USERS, short_id=claim.short_id)
            if users:
                return users[0]["id"]
        if claim.email:
            users = self.store.find(USERS, email=claim.email)
            if users:
                return users[0]["id"]
        if claim.user_id not in (None, ""):
            user = self.store.get(USERS, to_int(claim.user_id))
            if user:
                return user["id"]
        return None

    def register(self, claim: IdentityClaim):
        """
        Create or update the board record for a claim

        Existing non-null owner, MAC, name, location and topics are kept;
        the claim only fills the gaps.

        Returns:
            dict: The stored board record

        Raises:
            RegistrationError: No account resolves for the claim
        """
        user_id = self.resolve_owner(claim)
        if user_id is None:
            raise RegistrationError(
                f"User not found for board {claim.device_id}, shortId: {claim.short_id}, "
                f"email: {claim.email}, userId: {claim.user_id}"
            )

        board_id = claim.device_id
        topic_cmd = f"cmd/{board_id}"
        topic_resp = f"resp/{board_id}"
        existing = self.store.get(BOARDS, board_id)

        if existing is None:
            board = BoardRecord(
                board_id=board_id,
                user_id=user_id,
                mac_address=claim.mac_address,
                name=claim.display_name or f"ESP32 {board_id}",
                location=claim.location or "",
                mqtt_topic_cmd=topic_cmd,
                mqtt_topic_resp=topic_resp,
                created_at=now_iso(),
                updated_at=now_iso(),
            ).to_record()
            logger.info(f"[REGISTER] Registered new board {board_id} for user {user_id}"
                        f"{f' (MAC: {claim.mac_address})' if claim.mac_address else ''}")
        else:
            board = dict(existing)
            for key, value in (
                ("user_id", user_id),
                ("mac_address", claim.mac_address),
                ("name", claim.display_name),
                ("location", claim.location),
                ("mqtt_topic_cmd", topic_cmd),
                ("mqtt_topic_resp", topic_resp),
            ):
                if board.get(key) in (None, ""):
                    board[key] = value
            board["updated_at"] = now_iso()
            logger.info(f"[REGISTER] Updated board {board_id} for user {board['user_id']}")

        self.store.put(BOARDS, board_id, board)
        return board

    def auto_register(self, claim: IdentityClaim):
        """
        Register a board and make sure its responses reach the gateway

        Returns:
            bool: False if no account resolved (nothing is stored)
        """
        try:
            board = self.register(claim)
        except RegistrationError as e:
            logger.warning(f"[REGISTER] {e}")
            return False

        self.ensure_response_subscription(claim.device_id, board["mqtt_topic_resp"] or f"resp/{claim.device_id}")
        return True

    def ensure_response_subscription(self, board_id, topic):
        """
        Route the board's response topic to the response handler

        A wildcard already covering the topic is enough only when it would
        read the same board id from the topic; otherwise the exact topic is
        subscribed with a handler bound to the board.
        """
        pattern = self.mqtt_client.router.match(topic)
        if pattern == topic:
            return
        if pattern is not None and device_id_from_topic(topic) == board_id:
            return
        if self.response_handler is None:
            logger.warning(f"[REGISTER] No response handler to subscribe {topic}")
            return
        self.mqtt_client.subscribe(topic, self.response_handler.handler_for_board(board_id))

    def send_ack(self, claim: IdentityClaim, ok):
        """
        Tell the device whether it is linked to an account

        Goes to the claim's replyTopic, or cmd/{deviceId}.
        """
        ack = RegistrationAck(
            status="success" if ok else "failed",
            user_short_id=claim.short_id,
            timestamp=now_iso(),
            error=None if ok else "link_failed",
        )
        reply_topic = claim.reply_topic or f"cmd/{claim.device_id}"

        try:
            self.mqtt_client.publish(reply_topic, ack.model_dump(exclude_none=True), qos=1)
        except TransportError as e:
            logger.error(f"[REGISTER] Could not send registration ack to {reply_topic}: {e}")
            return False

        logger.info(f"[REGISTER] Registration ack sent to {reply_topic} ({ack.status})")
        return True

    def handle_registration(self, topic, message):
        """
        Handle an announce on the `register` topic and acknowledge it
        """
        data = decode_payload(message)
        if "raw_message" in data:
            logger.warning(f"[REGISTER] Invalid registration JSON: {data['raw_message'][:200]}")
            return

        try:
            claim = parse_registration(data)
        except ProtocolError as e:
            logger.warning(f"[REGISTER] {e}")
            return

        self.send_ack(claim, self.auto_register(claim))
