import unittest

from order_receipts.errors import AppError, ValidationError
from order_receipts.orders.parsing import (
    build_order_rows,
    parse_order_document,
    parse_retry_request,
    wrap_document,
)


ROOTLESS_DOCUMENT = """<?xml version="1.0" encoding="UTF-8"?>
<HEADER><USER_ID>U1</USER_ID><NAME>Kim</NAME><ADDRESS>Seoul</ADDRESS><STATUS>N</STATUS></HEADER>
<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I1</ITEM_ID><ITEM_NAME>Pencil</ITEM_NAME><PRICE>1200</PRICE></ITEM>
<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I2</ITEM_ID><ITEM_NAME>Eraser</ITEM_NAME><PRICE>500</PRICE></ITEM>
"""


class OrderDocumentParsingTest(unittest.TestCase):
    def test_rootless_document_is_wrapped(self) -> None:
        headers, items = parse_order_document(ROOTLESS_DOCUMENT)
        self.assertEqual(len(headers), 1)
        self.assertEqual([item.item_id for item in items], ["I1", "I2"])
        self.assertEqual(headers[0].address, "Seoul")

    def test_wrap_keeps_xml_declaration_first(self) -> None:
        wrapped = wrap_document('<?xml version="1.0"?><A/><B/>')
        self.assertEqual(wrapped, '<?xml version="1.0"?><ROOT><A/><B/></ROOT>')

    def test_document_with_root_is_parsed_directly(self) -> None:
        headers, items = parse_order_document(
            "<ORDERS><HEADER><USER_ID>U1</USER_ID></HEADER>"
            "<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I1</ITEM_ID></ITEM></ORDERS>"
        )
        self.assertEqual(headers[0].user_id, "U1")
        self.assertIsNone(headers[0].name)
        self.assertEqual(items[0].item_id, "I1")

    def test_dtd_is_rejected(self) -> None:
        document = '<!DOCTYPE x [<!ENTITY e SYSTEM "file:///etc/passwd">]><ROOT>&e;</ROOT>'
        with self.assertRaises(ValidationError):
            parse_order_document(document)

    def test_empty_and_broken_documents_are_rejected(self) -> None:
        for document in ("", "   ", "<HEADER><USER_ID>U1</HEADER>"):
            with self.subTest(document=document):
                with self.assertRaises(ValidationError):
                    parse_order_document(document)


class BuildOrderRowsTest(unittest.TestCase):
    def test_items_are_joined_to_headers(self) -> None:
        headers, items = parse_order_document(ROOTLESS_DOCUMENT)
        rows = build_order_rows(headers, items, "APPLICANT-TEST")
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0].name, "Kim")
        self.assertEqual(rows[1].item_name, "Eraser")
        self.assertEqual({row.applicant_key for row in rows}, {"APPLICANT-TEST"})
        self.assertEqual({row.status for row in rows}, {"N"})
        self.assertIsNone(rows[0].order_id)

    def test_validation_failures(self) -> None:
        cases = {
            "no_headers": ROOTLESS_DOCUMENT.split("<HEADER>")[0] + "<ITEM><USER_ID>U1</USER_ID></ITEM>",
            "non_numeric_price": ROOTLESS_DOCUMENT.replace("<PRICE>1200</PRICE>", "<PRICE>12.5</PRICE>"),
            "missing_item_name": ROOTLESS_DOCUMENT.replace("<ITEM_NAME>Pencil</ITEM_NAME>", ""),
            "unknown_user": ROOTLESS_DOCUMENT.replace(
                "<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I2", "<ITEM><USER_ID>U9</USER_ID><ITEM_ID>I2"
            ),
            "bad_status": ROOTLESS_DOCUMENT.replace("<STATUS>N</STATUS>", "<STATUS>X</STATUS>"),
        }
        for label, document in cases.items():
            with self.subTest(case=label):
                headers, items = parse_order_document(document)
                with self.assertRaises(ValidationError):
                    build_order_rows(headers, items, "APPLICANT-TEST")

    def test_missing_applicant_key_is_a_server_error(self) -> None:
        headers, items = parse_order_document(ROOTLESS_DOCUMENT)
        with self.assertRaises(AppError) as ctx:
            build_order_rows(headers, items, "  ")
        self.assertEqual(ctx.exception.http_status, 500)


class RetryRequestParsingTest(unittest.TestCase):
    def test_json_body(self) -> None:
        request = parse_retry_request('{"trace_id": " abc ", "participant_name": "new"}', "application/json")
        self.assertEqual(request.trace_id, "abc")
        self.assertEqual(request.participant_name, "new")

    def test_xml_body(self) -> None:
        request = parse_retry_request("<REQ><TRACE_ID>abc</TRACE_ID><PARTICIPANT_NAME>new</PARTICIPANT_NAME></REQ>")
        self.assertEqual(request.trace_id, "abc")
        self.assertEqual(request.participant_name, "new")

    def test_xml_body_without_root(self) -> None:
        request = parse_retry_request("<TRACE_ID>abc</TRACE_ID>", "application/xml")
        self.assertEqual(request.trace_id, "abc")
        self.assertIsNone(request.participant_name)

    def test_invalid_bodies(self) -> None:
        for body, content_type in (("", None), ("{broken", "application/json"), ("[1, 2]", "application/json")):
            with self.subTest(body=body):
                with self.assertRaises(ValidationError):
                    parse_retry_request(body, content_type)


if __name__ == "__main__":
    unittest.main()
