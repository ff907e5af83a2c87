"""
Analysis Orchestration Tests
"""
import pytest

from wattle import analysis
from wattle.analysis import (
    ANALYSIS_FAILED,
    HOLISTIC_FAILED,
    ResourceAreaAnalyzer,
    analyze_record,
    answer_question,
    area_tag,
    holistic_analysis,
    parse_fhir_resources,
)
from wattle.profile import diet_description, profile_text

TAGGED = (
    '<DETAILED_ANALYSIS>LDL 3.1 mmol/L</DETAILED_ANALYSIS>\n'
    '<BRIEF_SUMMARY>Cholesterol slightly high</BRIEF_SUMMARY>\n'
    '<DOCUMENT_TYPE>- Lipid Panel</DOCUMENT_TYPE>\n'
    '<DATE>Mar 2024</DATE>\n'
    '<SUGGESTED_RECORD_NAME>Lipid panel March</SUGGESTED_RECORD_NAME>\n'
    '<FHIR_RESOURCES>```json\n'
    '[{"resourceType": "Observation", "id": "ldl1", "code": {"text": "LDL"}, "valueQuantity": {"value": 3.1}},'
    ' {"resourceType": "bad type!"}, {"no": "type"}]\n'
    '```</FHIR_RESOURCES>'
)


@pytest.fixture
def record(services):
    services.storage.upload('users/user-1/records/lipids.png', b'\x89PNGdata', 'image/png')
    services.store.set('users/user-1/records/r1', {
        'name': 'Medical Record',
        'paths': ['users/user-1/records/lipids.png'],
        'urls': ['memory://users/user-1/records/lipids.png'],
        'fileTypes': ['image/png'],
        'createdAt': '2024-03-02T00:00:00+00:00',
        'analysisInProgress': True,
    })
    return 'r1'


class TestAnalyzeRecord:
    """Single record analysis"""

    def test_persists_sections_and_resources(self, services, assistant, record):
        assistant.chat_replies = [TAGGED]
        analyze_record('user-1', record, services=services)

        stored = services.store.get('users/user-1/records/r1')
        assert stored['analysis'] == TAGGED
        assert stored['detailedAnalysis'] == 'LDL 3.1 mmol/L'
        assert stored['briefSummary'] == 'Cholesterol slightly high'
        assert stored['recordType'] == 'Lipid Panel'
        assert stored['recordDate'] == 'Mar 2024'
        assert stored['name'] == 'Lipid panel March'
        assert stored['analysisInProgress'] is False
        assert stored['fhirResourceIds'] == ['Observation/ldl1']
        assert services.fhir.read('user-1', 'Observation', 'ldl1')['code'] == {'text': 'LDL'}

    def test_sends_files_as_data_urls(self, services, assistant, record):
        analyze_record('user-1', record, services=services)
        content = assistant.chat_calls[0][1]['content']
        image = [p for p in content if p['type'] == 'image_url'][0]
        assert image['image_url']['url'].startswith('data:image/png;base64,')

    def test_other_users_files_are_not_read(self, services, assistant):
        services.storage.upload('users/user-2/records/secret.png', b'VICTIMDATA', 'image/png')
        services.store.set('users/user-1/records/r2', {
            'name': 'Medical Record',
            'paths': ['users/user-2/records/secret.png'],
            'fileTypes': ['image/png'],
            'comment': 'check this',
        })
        analyze_record('user-1', 'r2', services=services)
        assert 'VklDVElNREFUQQ==' not in str(assistant.chat_calls)
        assert isinstance(assistant.chat_calls[0][1]['content'], str)

    def test_urls_resolve_to_owned_blobs_only(self, services, assistant):
        services.storage.upload('users/user-1/records/mine.png', b'MINE', 'image/png')
        services.storage.upload('users/user-2/records/theirs.png', b'THEIRS', 'image/png')
        record = {'urls': [
            'memory://users/user-1/records/mine.png',
            'memory://users/user-2/records/theirs.png',
            'http://169.254.169.254/latest/meta-data',
        ], 'fileTypes': ['image/png', 'image/png', 'image/png']}
        files = analysis.load_record_files(services, 'user-1', record, delay=0)
        assert files == [(b'MINE', 'image/png')]

    def test_custom_name_is_kept(self, services, assistant, record):
        services.store.update('users/user-1/records/r1', {'name': 'My lipids'})
        assistant.chat_replies = [TAGGED]
        analyze_record('user-1', record, services=services)
        assert services.store.get('users/user-1/records/r1')['name'] == 'My lipids'

    def test_malformed_fhir_json_is_noted(self, services, assistant, record):
        assistant.chat_replies = ['<BRIEF_SUMMARY>ok</BRIEF_SUMMARY><FHIR_RESOURCES>[{oops</FHIR_RESOURCES>']
        analyze_record('user-1', record, services=services)
        stored = services.store.get('users/user-1/records/r1')
        assert 'Could not parse FHIR resources' in stored['analysisError']
        assert 'fhirResourceIds' not in stored

    def test_model_failure_degrades_to_placeholder(self, services, assistant, record, monkeypatch):
        assistant.fail_chat = True
        monkeypatch.setattr(analysis, 'extract_text', lambda data, content_type: ('', 'OCR not available'))
        analyze_record('user-1', record, services=services)

        stored = services.store.get('users/user-1/records/r1')
        assert stored['analysis'] == ANALYSIS_FAILED
        assert stored['analysisInProgress'] is False
        assert 'LLM request failed' in stored['analysisError']

    def test_vision_failure_falls_back_to_text(self, services, assistant, record, monkeypatch):
        calls = {'n': 0}

        def flaky(messages, temperature=None, max_tokens=None):
            calls['n'] += 1
            if calls['n'] == 1:
                raise analysis.UpstreamError('vision unsupported')
            return '<BRIEF_SUMMARY>from text</BRIEF_SUMMARY>'

        monkeypatch.setattr(assistant, 'chat', flaky)
        monkeypatch.setattr(analysis, 'extract_text', lambda data, content_type: ('LDL 3.1', ''))
        analyze_record('user-1', record, services=services)
        assert services.store.get('users/user-1/records/r1')['briefSummary'] == 'from text'


class TestParseFhirResources:
    def test_single_object_is_wrapped(self):
        assert parse_fhir_resources('{"resourceType": "Condition"}') == [{'resourceType': 'Condition'}]

    def test_empty(self):
        assert parse_fhir_resources('') == []

    def test_not_a_list(self):
        with pytest.raises(ValueError):
            parse_fhir_resources('"text"')


class TestHolisticAnalysis:
    """Holistic analysis across profile and records"""

    def test_persists_text(self, services, assistant, record):
        services.store.set('users/user-1', {'age': 52, 'dietType': 'keto'})
        assistant.chat_replies = ['Overall healthy']
        text, debug = holistic_analysis('user-1', services=services)

        assert text == 'Overall healthy'
        assert debug == {}
        doc = services.store.get('users/user-1/analysis/holistic')
        assert doc['text'] == 'Overall healthy'
        assert doc['needsUpdate'] is False
        prompt = assistant.chat_calls[0][1]['content']
        assert 'Age: 52' in prompt
        assert 'Ketogenic diet' in prompt
        assert 'Record ID: r1' in prompt

    def test_failed_fetch_is_reported_in_debug(self, services, assistant, monkeypatch):
        def broken(path):
            raise RuntimeError('records unavailable')

        monkeypatch.setattr(services.store, 'list', broken)
        monkeypatch.setattr(services.store, 'query', lambda path, plan: broken(path))
        text, debug = holistic_analysis('user-1', services=services)
        assert text == 'Generic analysis'
        assert debug['recordsError'] == 'records unavailable'

    def test_model_failure_placeholder(self, services, assistant):
        assistant.fail_chat = True
        text, debug = holistic_analysis('user-1', services=services)
        assert text == HOLISTIC_FAILED
        assert 'holisticError' in debug
        assert services.store.get('users/user-1/analysis/holistic')['text'] == HOLISTIC_FAILED

    def test_resource_analyzer(self, services, assistant):
        services.fhir.create('user-1', 'Observation', {'resourceType': 'Observation', 'id': 'o1'})
        analyzer = ResourceAreaAnalyzer(services.fhir, assistant)
        text = analyzer.generate('user-1', 'Age: 40', {'analysisAreas': ['Sleep quality', 'Heart health']})
        assert '<SLEEP_QUALITY>' in text
        assert '<HEART_HEALTH>' in text
        assert len(assistant.chat_calls) == 2

    def test_resource_analyzer_without_data(self, services, assistant):
        text = ResourceAreaAnalyzer(services.fhir, assistant).generate('user-1', '')
        assert 'No health data available for analysis.' in text
        assert assistant.chat_calls == []

    def test_area_tag(self):
        assert area_tag('Medication adherence and effectiveness') == 'MEDICATION_ADHERENCE_AND_EFFECTIVENESS'


class TestAnswerQuestion:
    """Question answering through the responses API"""

    def test_new_conversation_builds_instructions(self, services, assistant, record):
        result = answer_question('user-1', 'How is my cholesterol?', services=services)
        assert result['answer'] == 'You are doing fine.'
        assert result['responseId'] == 'resp_1'
        call = assistant.respond_calls[0]
        assert 'Record ID: r1' in call['instructions']
        assert call['previous_response_id'] is None

    def test_follow_up_uses_previous_response_only(self, services, assistant):
        answer_question('user-1', 'And my sleep?', previous_response_id='resp_9', services=services)
        call = assistant.respond_calls[0]
        assert call['previous_response_id'] == 'resp_9'
        assert call['instructions'] is None

    def test_answer_tag_missing_returns_full_text(self, services, assistant):
        assistant.respond_replies = [('Just plain text', 'resp_x')]
        assert answer_question('user-1', 'Hi', services=services)['answer'] == 'Just plain text'


class TestProfile:
    def test_profile_text_fallbacks(self):
        text = profile_text({'age': 30, 'medications': ['metformin', 'statin']})
        assert 'Age: 30' in text
        assert 'Gender: Unknown' in text
        assert 'Medications: metformin, statin' in text
        assert 'Allergies: None reported' in text

    def test_diet_description(self):
        assert diet_description('vegan').startswith('Vegan diet')
        assert diet_description('carnivore') == 'carnivore'
        assert diet_description(None) == 'Not specified'
